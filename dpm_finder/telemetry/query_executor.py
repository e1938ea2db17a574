"""
Query execution against telemetry sources.

Provides:
- QueryExecutor: Abstract interface for instant/range queries and series listing
- PrometheusQueryExecutor: aiohttp client for the Prometheus HTTP API

The executor never caches and never retries; callers decide what to retry
based on the error type (see ``dpm_finder.errors``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from dpm_finder.errors import (
    QueryRejected,
    QueryTimeout,
    SourceUnreachable,
)
from dpm_finder.telemetry.models import QueryRow, Source, TimeRange

logger = logging.getLogger(__name__)

# Gateway statuses mean "nobody answered", not "the query is wrong"
_UNREACHABLE_STATUSES = frozenset({502, 503, 504})


class QueryExecutor(ABC):
    """
    Abstract query executor.

    Implementations issue exactly one network call per method call.
    """

    @abstractmethod
    async def execute(
        self,
        source: Source,
        query: str,
        time_range: TimeRange,
    ) -> List[QueryRow]:
        """
        Run a query expression.

        Args:
            source: Source to query
            query: Expression in the source's query language
            time_range: Instant or window

        Returns:
            Result rows; empty when the query matched nothing

        Raises:
            SourceUnreachable, QueryTimeout, QueryRejected
        """

    @abstractmethod
    async def series(
        self,
        source: Source,
        match: str,
        time_range: TimeRange,
    ) -> List[Dict[str, str]]:
        """List label sets of series matching ``match`` within the window."""

    async def close(self) -> None:
        """Release network resources."""


class PrometheusQueryExecutor(QueryExecutor):
    """
    Query executor speaking the Prometheus HTTP API.

    Example:
        executor = PrometheusQueryExecutor(timeout=15.0)
        rows = await executor.execute(source, "up", TimeRange.instant())
        await executor.close()
    """

    def __init__(
        self,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize executor.

        Args:
            timeout: Request-level timeout in seconds
            session: Optional shared session (not closed by ``close()``)
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _get(
        self,
        source: Source,
        path: str,
        params: List[tuple],
        query: Optional[str] = None,
    ) -> Any:
        """GET an API path and return the ``data`` member of the envelope."""
        if not source.url:
            raise SourceUnreachable(f"Source {source.uid} has no URL", source.uid)

        url = f"{source.url.rstrip('/')}{path}"
        session = await self._get_session()

        try:
            async with session.get(
                url,
                params=params,
                headers=source.headers or None,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                status = response.status
                raw = await response.read()
        except asyncio.TimeoutError as e:
            raise QueryTimeout(
                f"Query to {source.uid} timed out after {self.timeout}s",
                source.uid,
                self.timeout,
            ) from e
        except aiohttp.ClientError as e:
            raise SourceUnreachable(
                f"Source {source.uid} unreachable: {e}", source.uid
            ) from e

        try:
            body = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            body = None

        if not isinstance(body, dict):
            if status in _UNREACHABLE_STATUSES:
                raise SourceUnreachable(
                    f"Source {source.uid} returned HTTP {status}", source.uid
                )
            raise QueryRejected(
                f"Source {source.uid} returned a non-JSON response (HTTP {status})",
                source.uid,
                query,
                status=status,
            )

        if body.get("status") == "error" or status >= 400:
            error_type = body.get("errorType")
            error = body.get("error") or f"HTTP {status}"

            if error_type == "timeout":
                raise QueryTimeout(
                    f"Source {source.uid} timed out evaluating query: {error}",
                    source.uid,
                )
            if status in _UNREACHABLE_STATUSES and error_type in (None, "unavailable"):
                raise SourceUnreachable(
                    f"Source {source.uid} unavailable: {error}", source.uid
                )
            raise QueryRejected(
                f"Source {source.uid} rejected query: {error}",
                source.uid,
                query,
                error_type=error_type,
                status=status,
            )

        for warning in body.get("warnings") or []:
            logger.debug(f"Source {source.uid} warning: {warning}")

        return body.get("data")

    async def execute(
        self,
        source: Source,
        query: str,
        time_range: TimeRange,
    ) -> List[QueryRow]:
        """Run an instant or range query."""
        if not query or not query.strip():
            raise QueryRejected("Query expression must not be empty", source.uid, query)

        if time_range.is_instant:
            path = "/api/v1/query"
            params = [("query", query), ("time", _fmt_ts(time_range.end))]
        else:
            path = "/api/v1/query_range"
            params = [
                ("query", query),
                ("start", _fmt_ts(time_range.start)),
                ("end", _fmt_ts(time_range.end)),
                ("step", _fmt_ts(time_range.step)),
            ]

        logger.debug(f"Query {source.uid}: {query}")
        data = await self._get(source, path, params, query)
        return _parse_result(data, source, query)

    async def series(
        self,
        source: Source,
        match: str,
        time_range: TimeRange,
    ) -> List[Dict[str, str]]:
        """List series label sets via ``/api/v1/series``."""
        if not match or not match.strip():
            raise QueryRejected("Series matcher must not be empty", source.uid, match)

        params = [("match[]", match), ("end", _fmt_ts(time_range.end))]
        if time_range.start is not None:
            params.append(("start", _fmt_ts(time_range.start)))

        data = await self._get(source, "/api/v1/series", params, match)
        if data is None:
            return []
        if not isinstance(data, list):
            raise QueryRejected(
                f"Unexpected series payload from {source.uid}", source.uid, match
            )
        return [dict(labels) for labels in data if isinstance(labels, dict)]

    async def check_health(self, source: Source) -> bool:
        """Check the source answers API calls."""
        try:
            await self._get(source, "/api/v1/status/buildinfo", [])
            return True
        except (SourceUnreachable, QueryTimeout, QueryRejected) as e:
            logger.warning(f"Health check failed for {source.uid}: {e}")
            return False

    async def close(self) -> None:
        """Close the HTTP session if this executor created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


def _fmt_ts(value: Optional[float]) -> str:
    if value is None:
        raise ValueError("timestamp required")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def _parse_result(data: Any, source: Source, query: str) -> List[QueryRow]:
    """Convert a Prometheus ``data`` member into rows."""
    if not data:
        return []
    if not isinstance(data, dict):
        raise QueryRejected(f"Unexpected query payload from {source.uid}", source.uid, query)

    result_type = data.get("resultType")
    result = data.get("result")

    try:
        if result_type == "vector":
            rows = []
            for item in result or []:
                if not isinstance(item, dict):
                    raise TypeError(f"vector item is {type(item).__name__}")
                ts, raw = item.get("value") or (None, None)
                rows.append(QueryRow(
                    labels=dict(item.get("metric") or {}),
                    value=raw,
                    timestamp=float(ts) if ts is not None else None,
                ))
            return rows

        if result_type == "matrix":
            rows = []
            for item in result or []:
                if not isinstance(item, dict):
                    raise TypeError(f"matrix item is {type(item).__name__}")
                samples = tuple((float(ts), raw) for ts, raw in item.get("values") or [])
                last_ts, last_raw = samples[-1] if samples else (None, None)
                rows.append(QueryRow(
                    labels=dict(item.get("metric") or {}),
                    value=last_raw,
                    timestamp=last_ts,
                    samples=samples,
                ))
            return rows

        if result_type in ("scalar", "string"):
            if not result:
                return []
            ts, raw = result
            return [QueryRow(labels={}, value=raw, timestamp=float(ts))]

    except (TypeError, ValueError, AttributeError) as e:
        raise QueryRejected(
            f"Malformed {result_type} result from {source.uid}: {e}", source.uid, query
        ) from e

    raise QueryRejected(
        f"Unsupported result type {result_type!r} from {source.uid}", source.uid, query
    )
