"""In-memory fakes for the query executor, collector registry and completion client."""

from __future__ import annotations

import asyncio
import re
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from dpm_finder.annotation.completion_client import CompletionClient
from dpm_finder.fleet.client import NO_CONFIG_PLACEHOLDER, CollectorInfo, CollectorRegistry
from dpm_finder.telemetry.models import QueryRow, Source, TimeRange
from dpm_finder.telemetry.query_executor import QueryExecutor

_METRIC_IN_QUERY = re.compile(r"count_over_time\(([A-Za-z_:][\w:]*)\{")

Failure = Union[BaseException, List[BaseException]]


def _pop_failure(failures: Dict, key) -> Optional[BaseException]:
    """A single exception fails every call; a list fails one call per entry."""
    failure = failures.get(key)
    if failure is None:
        return None
    if isinstance(failure, list):
        return failure.pop(0) if failure else None
    return failure


class FakeQueryExecutor(QueryExecutor):
    """
    Serves series names and rates from dictionaries.

    ``series`` maps source uid -> names in discovery order.
    ``rates`` maps (uid, metric) -> raw sample value; absent means empty result.
    ``responses`` maps an exact query string -> rows, checked first.
    ``series_failures`` / ``rate_failures`` inject errors per uid / (uid, metric).
    ``delays`` maps uid or (uid, metric) -> seconds to sleep before answering.
    """

    def __init__(
        self,
        series: Optional[Dict[str, Sequence[str]]] = None,
        rates: Optional[Dict[Tuple[str, str], str]] = None,
        responses: Optional[Dict[str, List[QueryRow]]] = None,
        series_failures: Optional[Dict[str, Failure]] = None,
        rate_failures: Optional[Dict[Tuple[str, str], Failure]] = None,
        delays: Optional[Dict[Union[str, Tuple[str, str]], float]] = None,
    ):
        self.series_by_source = {k: list(v) for k, v in (series or {}).items()}
        self.rates = dict(rates or {})
        self.responses = dict(responses or {})
        self.series_failures = dict(series_failures or {})
        self.rate_failures = dict(rate_failures or {})
        self.delays = dict(delays or {})

        self.queries: List[Tuple[str, str, TimeRange]] = []
        self.series_calls: List[Tuple[str, str, TimeRange]] = []
        self.in_flight: Dict[str, int] = {}
        self.peak_in_flight: Dict[str, int] = {}
        self.closed = False

    async def _enter(self, uid: str, delay_key) -> None:
        self.in_flight[uid] = self.in_flight.get(uid, 0) + 1
        self.peak_in_flight[uid] = max(self.peak_in_flight.get(uid, 0), self.in_flight[uid])
        delay = self.delays.get(delay_key, self.delays.get(uid, 0.0))
        await asyncio.sleep(delay)

    def _exit(self, uid: str) -> None:
        self.in_flight[uid] -= 1

    async def series(
        self,
        source: Source,
        match: str,
        time_range: TimeRange,
    ) -> List[Dict[str, str]]:
        self.series_calls.append((source.uid, match, time_range))
        await self._enter(source.uid, source.uid)
        try:
            failure = _pop_failure(self.series_failures, source.uid)
            if failure is not None:
                raise failure
            return [
                {"__name__": name, "cluster": "c1"}
                for name in self.series_by_source.get(source.uid, [])
            ]
        finally:
            self._exit(source.uid)

    async def execute(
        self,
        source: Source,
        query: str,
        time_range: TimeRange,
    ) -> List[QueryRow]:
        self.queries.append((source.uid, query, time_range))
        if query in self.responses:
            return self.responses[query]

        match = _METRIC_IN_QUERY.search(query)
        metric = match.group(1) if match else ""
        key = (source.uid, metric)

        await self._enter(source.uid, key)
        try:
            failure = _pop_failure(self.rate_failures, key)
            if failure is not None:
                raise failure
            if key not in self.rates:
                return []
            return [QueryRow(labels={}, value=self.rates[key], timestamp=time_range.end)]
        finally:
            self._exit(source.uid)

    def queries_for(self, metric: str) -> List[str]:
        return [q for _, q, _ in self.queries if f"({metric}{{" in q]

    async def close(self) -> None:
        self.closed = True


class FakeRegistry(CollectorRegistry):
    """Collector registry backed by a list and a dict."""

    def __init__(
        self,
        collectors: Optional[List[CollectorInfo]] = None,
        configs: Optional[Dict[str, str]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
    ):
        self.collectors = list(collectors or [])
        self.configs = dict(configs or {})
        self.error = error
        self.delay = delay
        self.list_calls = 0
        self.config_calls: List[str] = []
        self.closed = False

    async def list_collectors(self) -> List[CollectorInfo]:
        self.list_calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.collectors)

    async def get_config(self, collector_id: str) -> str:
        self.config_calls.append(collector_id)
        return self.configs.get(collector_id) or NO_CONFIG_PLACEHOLDER

    async def close(self) -> None:
        self.closed = True


class FakeCompletionClient(CompletionClient):
    """
    Streams a fixed list of chunks.

    ``fail_after`` raises ``error`` once that many chunks have been sent.
    """

    def __init__(
        self,
        chunks: Sequence[str] = ("The metric ", "counts ", "requests."),
        delay: float = 0.0,
        fail_after: Optional[int] = None,
        error: Optional[BaseException] = None,
    ):
        super().__init__(api_key="test-key", model="fake-model")
        self.chunks = list(chunks)
        self.delay = delay
        self.fail_after = fail_after
        self.error = error or ConnectionError("connection reset")
        self.requests: List[List[Dict[str, str]]] = []
        self.streams_closed = 0
        self.closed = False

    @property
    def prompts(self) -> List[str]:
        return [messages[-1]["content"] for messages in self.requests]

    async def complete_stream(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        self.requests.append(list(messages))
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.error
                await asyncio.sleep(self.delay)
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise self.error
        finally:
            self.streams_closed += 1

    async def close(self) -> None:
        self.closed = True
