"""
Concurrent DPM ranking across telemetry sources.

Fan-out per ranking run:

    rank(sources)
      ├── source A: discover ──► estimate s1 ─┐
      │                          estimate s2 ─┤
      ├── source B: discover ──► estimate s3 ─┼──► sorted accumulator ──► snapshots
      │                          ...          │
      └── ...                                 ┘

Every run gets a generation number. Restarting (or cancelling) advances
the generation and cancels the previous run's tasks; any result that still
lands is checked against the current generation and discarded if stale.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple

from dpm_finder.config.base_config import QueryConfig
from dpm_finder.errors import DPMFinderError, TransportError
from dpm_finder.telemetry.discovery import SeriesDiscoverer
from dpm_finder.telemetry.models import (
    RankedListSnapshot,
    RankingFailure,
    RateSample,
    SeriesCandidate,
    Source,
)
from dpm_finder.telemetry.query_executor import QueryExecutor
from dpm_finder.telemetry.rates import RateEstimator
from dpm_finder.utils.async_helpers import (
    AsyncSemaphore,
    GenerationCounter,
    async_retry,
    cancel_tasks,
)
from dpm_finder.utils.logging_config import set_generation, set_stage

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[RankedListSnapshot], None]


class RankingAggregator:
    """
    Ranks series from many sources by DPM without blocking the caller.

    Example:
        aggregator = RankingAggregator(executor)
        aggregator.subscribe(render)
        aggregator.rank(sources)          # returns at once, loading=True
        final = await aggregator.wait_settled()
    """

    def __init__(
        self,
        executor: QueryExecutor,
        discoverer: Optional[SeriesDiscoverer] = None,
        estimator: Optional[RateEstimator] = None,
        config: Optional[QueryConfig] = None,
    ):
        self.config = config or QueryConfig()
        self.executor = executor
        self.discoverer = discoverer or SeriesDiscoverer(
            executor,
            group_label=self.config.group_label,
            max_series=self.config.max_series_per_source,
        )
        self.estimator = estimator or RateEstimator(
            executor, group_label=self.config.group_label
        )
        self.window = timedelta(minutes=self.config.window_minutes)

        self._generation = GenerationCounter()
        self._keys: List[Tuple[float, int]] = []
        self._samples: List[RateSample] = []
        self._failures: List[RankingFailure] = []
        self._discovery_index = 0
        self._loading = False
        self._settled = asyncio.Event()
        self._settled.set()
        self._tasks: Set[asyncio.Task] = set()
        self._subscribers: List[SnapshotCallback] = []

    @classmethod
    def from_config(
        cls,
        config: QueryConfig,
        executor: Optional[QueryExecutor] = None,
    ) -> "RankingAggregator":
        if executor is None:
            from dpm_finder.telemetry.query_executor import PrometheusQueryExecutor

            executor = PrometheusQueryExecutor(timeout=config.timeout_seconds)
        return cls(executor, config=config)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation.current

    @property
    def loading(self) -> bool:
        return self._loading

    def snapshot(self) -> RankedListSnapshot:
        """Current view; partial while ``loading`` is True."""
        return RankedListSnapshot(
            generation=self._generation.current,
            samples=tuple(self._samples),
            loading=self._loading,
            failures=tuple(self._failures),
        )

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Call ``callback`` with a snapshot after every change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def wait_settled(self) -> RankedListSnapshot:
        """Wait until the latest run settles (or is cancelled)."""
        while True:
            event = self._settled
            await event.wait()
            if event is self._settled:
                return self.snapshot()

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Ranking subscriber failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def rank(self, sources: Iterable[Source]) -> RankedListSnapshot:
        """
        Start ranking ``sources``, superseding any run in progress.

        Must be called from within a running event loop.

        Returns:
            The initial snapshot of the new generation
        """
        loop = asyncio.get_running_loop()
        generation = self._restart()

        unique: List[Source] = []
        for source in sources:
            if source not in unique:
                unique.append(source)

        if not unique:
            self._loading = False
            self._settled.set()
            self._notify()
            return self.snapshot()

        self._loading = True
        task = loop.create_task(self._run(generation, unique))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            f"Ranking generation {generation} started for "
            f"{len(unique)} source(s): {', '.join(s.uid for s in unique)}"
        )
        self._notify()
        return self.snapshot()

    def cancel(self) -> RankedListSnapshot:
        """Abandon the current run and clear the list."""
        self._restart()
        self._loading = False
        self._settled.set()
        self._notify()
        return self.snapshot()

    async def aclose(self) -> None:
        """Cancel outstanding work and wait for it to unwind."""
        tasks = list(self._tasks)
        self.cancel()
        await cancel_tasks(tasks)

    def _restart(self) -> int:
        for task in list(self._tasks):
            task.cancel()

        generation = self._generation.advance()
        self._keys = []
        self._samples = []
        self._failures = []
        self._discovery_index = 0

        # Wake waiters of the old run so they re-wait on the new one
        self._settled.set()
        self._settled = asyncio.Event()
        return generation

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def _retrying(self, func: Callable[..., Awaitable]) -> Callable[..., Awaitable]:
        return async_retry(
            attempts=self.config.retry_attempts + 1,
            delay=self.config.retry_delay_seconds,
            exceptions=(TransportError,),
        )(func)

    async def _run(self, generation: int, sources: List[Source]) -> None:
        set_generation(generation)
        set_stage("ranking")

        results = await asyncio.gather(
            *(self._rank_source(generation, source) for source in sources),
            return_exceptions=True,
        )
        for source, result in zip(sources, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"Ranking of {source.uid} failed unexpectedly: {result!r}")
                self._record_failure(generation, RankingFailure(source.uid, str(result)))

        if not self._generation.is_current(generation):
            return

        self._loading = False
        self._settled.set()
        logger.info(
            f"Ranking generation {generation} settled: {len(self._samples)} series, "
            f"{len(self._failures)} failure(s)"
        )
        self._notify()

    async def _rank_source(self, generation: int, source: Source) -> None:
        semaphore = AsyncSemaphore(self.config.max_concurrent_per_source, name=source.uid)

        async def discover() -> List[str]:
            async with semaphore:
                return await self.discoverer.discover(source, self.window)

        try:
            names = await self._retrying(discover)()
        except DPMFinderError as e:
            logger.warning(f"Discovery failed on {source.uid}: {e}")
            self._record_failure(generation, RankingFailure(source.uid, str(e)))
            return

        if not self._generation.is_current(generation):
            return

        candidates = []
        for name in names:
            candidates.append(SeriesCandidate(name, source, self._discovery_index))
            self._discovery_index += 1

        await asyncio.gather(
            *(self._estimate(generation, candidate, semaphore) for candidate in candidates)
        )
        logger.debug(f"Source {source.uid} done: {semaphore.get_metrics()}")

    async def _estimate(
        self,
        generation: int,
        candidate: SeriesCandidate,
        semaphore: AsyncSemaphore,
    ) -> None:
        async def estimate() -> Optional[RateSample]:
            async with semaphore:
                return await self.estimator.estimate(candidate.source, candidate, self.window)

        try:
            sample = await self._retrying(estimate)()
        except DPMFinderError as e:
            logger.warning(
                f"Rate estimate failed for {candidate.name} on {candidate.source.uid}: {e}"
            )
            self._record_failure(
                generation, RankingFailure(candidate.source.uid, str(e), candidate.name)
            )
            return
        except Exception as e:
            logger.exception(
                f"Unexpected error estimating {candidate.name} on {candidate.source.uid}"
            )
            self._record_failure(
                generation, RankingFailure(candidate.source.uid, repr(e), candidate.name)
            )
            return

        if sample is not None:
            self._publish(generation, sample)

    def _publish(self, generation: int, sample: RateSample) -> None:
        if not self._generation.is_current(generation):
            logger.debug(f"Discarding stale sample {sample.name} from generation {generation}")
            return

        key = sample.sort_key
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._samples.insert(index, sample)
        self._notify()

    def _record_failure(self, generation: int, failure: RankingFailure) -> None:
        if self._generation.is_current(generation):
            self._failures.append(failure)
