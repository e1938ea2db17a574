"""
Pipeline coordinator: owns the ranking and the per-metric analysis.

Analysis phases:

    IDLE ──select──► RESOLVING_CONFIG ──config──► STREAMING ──► DONE
                          │                          │
                          └── not found / error ─────┴──────► ERRORED

    any outstanding phase ──select(other)──► SUPERSEDED, new run starts

Each analysis run has its own generation; events from older generations
are dropped before they reach the snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, List, Optional

from dpm_finder.annotation.pipeline import (
    AnnotationPipeline,
    AnnotationStatus,
    AnnotationStream,
)
from dpm_finder.config.base_config import DPMFinderConfig
from dpm_finder.errors import FleetAPIError, StreamError
from dpm_finder.fleet.resolver import (
    CollectorConfigResolver,
    CollectorNotFound,
)
from dpm_finder.telemetry.models import RankedListSnapshot, Source
from dpm_finder.telemetry.ranking import RankingAggregator
from dpm_finder.utils.async_helpers import GenerationCounter, cancel_tasks
from dpm_finder.utils.logging_config import LogContext, set_generation, set_stage

logger = logging.getLogger(__name__)


class CoordinatorPhase(Enum):
    """Analysis run phases."""
    IDLE = "idle"
    RESOLVING_CONFIG = "resolving_config"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"
    SUPERSEDED = "superseded"

    @property
    def outstanding(self) -> bool:
        return self in (CoordinatorPhase.RESOLVING_CONFIG, CoordinatorPhase.STREAMING)


@dataclass(frozen=True)
class CoordinatorSnapshot:
    """Read-only view of the current analysis run."""

    generation: int
    phase: CoordinatorPhase = CoordinatorPhase.IDLE
    metric: Optional[str] = None
    target: Optional[str] = None
    text: str = ""
    config_text: str = ""
    collector_id: Optional[str] = None
    message: Optional[str] = None
    annotation_status: AnnotationStatus = AnnotationStatus.IDLE


SnapshotCallback = Callable[[CoordinatorSnapshot], None]


class PipelineCoordinator:
    """
    Sequences config resolution and annotation, and owns restart semantics.

    Example:
        coordinator = PipelineCoordinator(resolver, pipeline, ranking)
        coordinator.rank(sources)
        coordinator.select("http_requests_total", "cluster=prod")
        final = await coordinator.wait()
    """

    def __init__(
        self,
        resolver: CollectorConfigResolver,
        pipeline: AnnotationPipeline,
        ranking: Optional[RankingAggregator] = None,
        default_target: Optional[str] = None,
    ):
        self.resolver = resolver
        self.pipeline = pipeline
        self.ranking = ranking
        self.default_target = default_target

        self._generation = GenerationCounter()
        self._snapshot = CoordinatorSnapshot(generation=0)
        self._task: Optional[asyncio.Task] = None
        self._stream: Optional[AnnotationStream] = None
        self._subscribers: List[SnapshotCallback] = []

    @classmethod
    def from_config(cls, config: DPMFinderConfig) -> "PipelineCoordinator":
        """Wire production components from configuration."""
        from dpm_finder.annotation.completion_client import (
            create_completion_client_from_config,
        )
        from dpm_finder.fleet.client import FleetManagementClient

        resolver = CollectorConfigResolver(
            FleetManagementClient.from_config(config.fleet),
            attribute_key=config.fleet.attribute_key,
        )
        pipeline = AnnotationPipeline(
            create_completion_client_from_config(config.llm),
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
        )
        return cls(
            resolver,
            pipeline,
            ranking=RankingAggregator.from_config(config.query),
            default_target=config.fleet.default_target,
        )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> CoordinatorSnapshot:
        return self._snapshot

    def ranking_snapshot(self) -> Optional[RankedListSnapshot]:
        return self.ranking.snapshot() if self.ranking else None

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Call ``callback`` on every analysis transition. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, snapshot: CoordinatorSnapshot) -> None:
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Coordinator subscriber failed: {e}")

    def _transition(self, generation: int, phase: CoordinatorPhase, **changes) -> bool:
        """Apply a transition for ``generation``; stale generations are ignored."""
        if not self._generation.is_current(generation):
            logger.debug(f"Dropping {phase.value} from superseded generation {generation}")
            return False
        self._publish(replace(self._snapshot, phase=phase, **changes))
        return True

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank(self, sources: Iterable[Source]) -> RankedListSnapshot:
        """Restart the ranking; analysis runs are unaffected."""
        if self.ranking is None:
            raise RuntimeError("No ranking aggregator configured")
        return self.ranking.rank(sources)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def select(self, metric: str, target: Optional[str] = None) -> CoordinatorSnapshot:
        """
        Start analysing ``metric`` for ``target``, superseding any run in flight.

        Must be called from within a running event loop.
        """
        if not metric or not metric.strip():
            raise ValueError("A metric name is required")
        target = target or self.default_target
        if not target:
            raise ValueError("An analysis target is required (e.g. cluster=prod)")

        loop = asyncio.get_running_loop()

        if self._snapshot.phase.outstanding:
            logger.info(
                f"Superseding analysis of {self._snapshot.metric} with {metric}"
            )
            self._publish(replace(self._snapshot, phase=CoordinatorPhase.SUPERSEDED))
        self._abandon()

        generation = self._generation.advance()
        self._publish(CoordinatorSnapshot(
            generation=generation,
            phase=CoordinatorPhase.RESOLVING_CONFIG,
            metric=metric,
            target=target,
        ))
        self._task = loop.create_task(self._run(generation, metric, target))
        return self._snapshot

    def close(self) -> CoordinatorSnapshot:
        """Abandon the current analysis and return to idle."""
        self._abandon()
        generation = self._generation.advance()
        self._publish(CoordinatorSnapshot(generation=generation))
        return self._snapshot

    async def wait(self) -> CoordinatorSnapshot:
        """Wait for the current analysis run to finish."""
        while self._task is not None and not self._task.done():
            task = self._task
            await asyncio.gather(task, return_exceptions=True)
            if task is self._task:
                break
        return self._snapshot

    async def aclose(self) -> None:
        """Cancel everything and release clients."""
        task = self._task
        self.close()
        if task is not None:
            await cancel_tasks([task])
        if self.ranking is not None:
            await self.ranking.aclose()
            await self.ranking.executor.close()
        await self.resolver.registry.close()
        await self.pipeline.close()

    def _abandon(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, generation: int, metric: str, target: str) -> None:
        set_generation(generation)
        set_stage("analysis")

        with LogContext(metric=metric, target=target):
            try:
                result = await self.resolver.resolve(target)
            except FleetAPIError as e:
                logger.warning(f"Config resolution failed: {e}")
                self._transition(
                    generation,
                    CoordinatorPhase.ERRORED,
                    config_text="Error fetching config.",
                    message=f"Failed to run analysis: {e}",
                )
                return
            except ValueError as e:
                self._transition(generation, CoordinatorPhase.ERRORED, message=str(e))
                return
            except Exception as e:
                logger.exception("Unexpected error resolving collector config")
                self._transition(
                    generation,
                    CoordinatorPhase.ERRORED,
                    message=f"Failed to run analysis: {e}",
                )
                return

            if isinstance(result, CollectorNotFound):
                self._transition(
                    generation,
                    CoordinatorPhase.ERRORED,
                    config_text=result.message,
                    message="Unable to analyze config: no collector found.",
                )
                return

            if not self._generation.is_current(generation):
                return

            try:
                stream = self.pipeline.analyze(metric, result)
            except ValueError as e:
                self._transition(
                    generation,
                    CoordinatorPhase.ERRORED,
                    config_text=result.content,
                    collector_id=result.collector_id,
                    message=f"Failed to run analysis: {e}",
                )
                return
            self._stream = stream
            self._transition(
                generation,
                CoordinatorPhase.STREAMING,
                config_text=result.content,
                collector_id=result.collector_id,
                annotation_status=AnnotationStatus.LOADING,
            )

            try:
                async for text in stream:
                    self._transition(
                        generation,
                        CoordinatorPhase.STREAMING,
                        text=text,
                        annotation_status=stream.state.status,
                    )
            except StreamError as e:
                self._transition(
                    generation,
                    CoordinatorPhase.ERRORED,
                    text=e.partial_text,
                    message=str(e),
                    annotation_status=stream.state.status,
                )
                return

            if stream.closed:
                return

            self._transition(
                generation,
                CoordinatorPhase.DONE,
                text=stream.state.text,
                annotation_status=stream.state.status,
            )
