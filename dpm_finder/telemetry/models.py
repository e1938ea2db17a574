"""
Core data structures for telemetry discovery and ranking.

Defines:
- Source: A queryable telemetry source
- TimeRange: Instant or bounded query window
- QueryRow: One labelled result from a query
- SeriesCandidate: A series name observed on a source
- RateSample: An accepted DPM estimate
- LabelRate: DPM for one value of a group-by label
- RankedListSnapshot: Read-only view of the ranking
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

PROMETHEUS_TYPE = "prometheus"


@dataclass(frozen=True)
class Source:
    """
    A telemetry source, identified by ``uid``.

    ``url`` points at the Prometheus HTTP API root; it may be a Grafana
    datasource proxy path such as ``.../api/datasources/proxy/7``.
    """

    uid: str
    name: str = field(default="", compare=False)
    type: str = field(default=PROMETHEUS_TYPE, compare=False)
    url: str = field(default="", compare=False)
    headers: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not self.uid:
            raise ValueError("Source uid must not be empty")
        if not self.name:
            object.__setattr__(self, "name", self.uid)

    @property
    def queryable(self) -> bool:
        return self.type == PROMETHEUS_TYPE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            uid=str(data["uid"]),
            name=str(data.get("name") or data["uid"]),
            type=str(data.get("type", PROMETHEUS_TYPE)),
            url=str(data.get("url", "")),
            headers=dict(data.get("headers") or {}),
        )

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class TimeRange:
    """
    Query time range: an instant (``start is None``) or a window.

    Times are unix seconds. ``step`` applies to windows only.
    """

    end: float
    start: Optional[float] = None
    step: Optional[float] = None

    def __post_init__(self):
        if self.start is not None:
            if self.start > self.end:
                raise ValueError(f"start ({self.start}) is after end ({self.end})")
            if self.step is not None and self.step <= 0:
                raise ValueError("step must be positive")

    @property
    def is_instant(self) -> bool:
        return self.start is None

    @property
    def duration(self) -> float:
        return 0.0 if self.start is None else self.end - self.start

    @classmethod
    def instant(cls, at: Optional[float] = None) -> "TimeRange":
        return cls(end=time.time() if at is None else at)

    @classmethod
    def window(
        cls,
        start: float,
        end: float,
        step: Optional[float] = None,
    ) -> "TimeRange":
        if step is None:
            step = default_step(end - start)
        return cls(end=end, start=start, step=step)

    @classmethod
    def last(
        cls,
        span: timedelta,
        now: Optional[float] = None,
        step: Optional[float] = None,
    ) -> "TimeRange":
        """Window ending now and reaching ``span`` back."""
        end = time.time() if now is None else now
        return cls.window(end - span.total_seconds(), end, step)


def default_step(span_seconds: float) -> float:
    """Roughly 300 points per window, never finer than 15s."""
    return max(15.0, math.ceil(span_seconds / 300.0))


def promql_duration(window: timedelta) -> str:
    """Render a window as a PromQL range duration (``5m``, ``90s``)."""
    seconds = round(window.total_seconds())
    if seconds <= 0:
        raise ValueError("window must be positive")
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def window_minutes(window: timedelta) -> float:
    return window.total_seconds() / 60.0


def parse_sample_value(raw: Any) -> Optional[float]:
    """Parse a Prometheus sample value; NaN, infinities and junk give None."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


@dataclass(frozen=True)
class QueryRow:
    """
    One result row: a label set plus its value.

    Instant queries fill ``value``/``timestamp``. Range queries also fill
    ``samples`` and mirror the last sample into ``value``.
    """

    labels: Dict[str, str]
    value: Optional[str] = None
    timestamp: Optional[float] = None
    samples: Tuple[Tuple[float, str], ...] = ()

    @property
    def number(self) -> Optional[float]:
        return parse_sample_value(self.value)


@dataclass(frozen=True)
class SeriesCandidate:
    """
    A series name seen on one source.

    Identity is ``(name, source)``; ``discovery_index`` only orders ties.
    """

    name: str
    source: Source
    discovery_index: int = field(default=0, compare=False)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.source.uid)


@dataclass(frozen=True)
class RateSample:
    """An accepted ingestion-rate estimate. ``dpm`` is always positive."""

    series: SeriesCandidate
    dpm: float
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not self.dpm > 0:
            raise ValueError(f"RateSample requires dpm > 0, got {self.dpm}")

    @property
    def name(self) -> str:
        return self.series.name

    @property
    def source(self) -> Source:
        return self.series.source

    @property
    def sort_key(self) -> Tuple[float, int]:
        return (-self.dpm, self.series.discovery_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.name,
            "source": self.source.uid,
            "source_name": self.source.name,
            "dpm": self.dpm,
            "computed_at": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class LabelRate:
    """DPM attributed to one value of a group-by label."""

    label: str
    value: str
    dpm: float
    points: Tuple[Tuple[float, float], ...] = ()


@dataclass(frozen=True)
class RankingFailure:
    """A source or series that contributed nothing because of an error."""

    source: str
    message: str
    series: Optional[str] = None


@dataclass(frozen=True)
class RankedListSnapshot:
    """
    Read-only view of one ranking generation.

    ``loading`` is True while any discovery or estimate is outstanding;
    only a snapshot with ``loading`` False is final.
    """

    generation: int
    samples: Tuple[RateSample, ...] = ()
    loading: bool = False
    failures: Tuple[RankingFailure, ...] = ()

    @property
    def settled(self) -> bool:
        return not self.loading

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)

    def as_rows(self) -> List[Tuple[str, str, float]]:
        return [(s.name, s.source.uid, s.dpm) for s in self.samples]
