"""
Ingestion rate (datapoints per minute) estimation.

All estimates are computed source-side with ``count_over_time`` so the
source's own index does the counting:

    DPM = samples observed in window / window length in minutes
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Callable, List, Optional, Union

from dpm_finder.telemetry.models import (
    LabelRate,
    RateSample,
    SeriesCandidate,
    Source,
    TimeRange,
    parse_sample_value,
    promql_duration,
    window_minutes,
)
from dpm_finder.telemetry.query_executor import QueryExecutor

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=5)
DEFAULT_LOOKBACK = timedelta(hours=1)

# Labels offered for per-metric breakdowns
BREAKDOWN_LABELS = ("instance", "cluster", "job", "pod", "namespace")
DEFAULT_BREAKDOWN_LABEL = "job"

# "sum": total DPM over the window. "avg": mean per-series DPM over the window.
BREAKDOWN_AGGREGATIONS = ("sum", "avg")
DEFAULT_AVERAGE_WINDOW = timedelta(hours=1)

# Scrape bookkeeping series used for the cluster-wide view
SCRAPE_SAMPLES_METRIC = "scrape_samples_scraped"


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def rate_query(name: str, window: timedelta, group_label: str = "cluster") -> str:
    """Aggregate DPM of every series named ``name`` under ``group_label``."""
    return (
        f'sum(count_over_time({name}{{{group_label}=~".+"}}[{promql_duration(window)}]))'
        f" / {window_minutes(window):g}"
    )


def breakdown_query(
    name: str,
    cluster: str,
    group_by: str,
    window: timedelta,
    cluster_label: str = "cluster",
    aggregation: str = "sum",
) -> str:
    """DPM of ``name`` in one cluster, split by ``group_by``."""
    selector = f"{name}{{{cluster_label}={_quote(cluster)}}}"
    if aggregation == "avg":
        return (
            f"avg by ({group_by}) (count_over_time({selector}[{promql_duration(window)}])"
            f" / {window_minutes(window):g})"
        )
    return (
        f"sum by ({group_by}) (count_over_time({selector}[{promql_duration(window)}]))"
        f" / {window_minutes(window):g}"
    )


def overview_query(window: timedelta, group_label: str = "cluster") -> str:
    """Rolling scrape DPM per ``group_label`` value."""
    return (
        f"sum by ({group_label}) "
        f"(count_over_time({SCRAPE_SAMPLES_METRIC}[{promql_duration(window)}]))"
        f" / {window_minutes(window):g}"
    )


class RateEstimator:
    """
    Computes empirical DPM for series on a source.

    A zero, missing or unparsable result means "not ingesting" and yields
    ``None`` rather than a zero-valued sample.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        group_label: str = "cluster",
        clock: Callable[[], float] = time.time,
    ):
        self.executor = executor
        self.group_label = group_label
        self._clock = clock

    async def estimate(
        self,
        source: Source,
        series: Union[str, SeriesCandidate],
        window: Optional[timedelta] = None,
    ) -> Optional[RateSample]:
        """
        Estimate the DPM of one series.

        Args:
            source: Source to query
            series: Series name or candidate
            window: Counting window (default 5 minutes)

        Returns:
            RateSample, or None when the series shows no ingestion
        """
        window = window or DEFAULT_WINDOW
        candidate = (
            series if isinstance(series, SeriesCandidate)
            else SeriesCandidate(name=series, source=source)
        )

        query = rate_query(candidate.name, window, self.group_label)
        rows = await self.executor.execute(source, query, TimeRange.instant(self._clock()))

        if not rows:
            logger.debug(f"No samples for {candidate.name} on {source.uid}")
            return None

        dpm = parse_sample_value(rows[0].value)
        if dpm is None or dpm <= 0:
            logger.debug(
                f"Dropping {candidate.name} on {source.uid}: value {rows[0].value!r}"
            )
            return None

        return RateSample(series=candidate, dpm=dpm)

    async def breakdown(
        self,
        source: Source,
        metric: str,
        cluster: str,
        group_by: str = DEFAULT_BREAKDOWN_LABEL,
        window: Optional[timedelta] = None,
        lookback: Optional[timedelta] = None,
        aggregation: str = "sum",
    ) -> List[LabelRate]:
        """
        Split a metric's DPM in one cluster by a label.

        ``aggregation="sum"`` totals the label value's samples over ``window``
        (default 5 minutes). ``aggregation="avg"`` averages per-series DPM
        over ``window`` (default 1 hour).

        Returns one entry per label value, using the latest point of the
        range, sorted by DPM descending.
        """
        if group_by not in BREAKDOWN_LABELS:
            raise ValueError(
                f"Unsupported group-by label {group_by!r}; expected one of {BREAKDOWN_LABELS}"
            )
        if aggregation not in BREAKDOWN_AGGREGATIONS:
            raise ValueError(
                f"Unsupported aggregation {aggregation!r}; expected one of {BREAKDOWN_AGGREGATIONS}"
            )

        if window is None:
            window = DEFAULT_AVERAGE_WINDOW if aggregation == "avg" else DEFAULT_WINDOW
        query = breakdown_query(
            metric, cluster, group_by, window, self.group_label, aggregation
        )
        return await self._label_rates(source, query, group_by, lookback)

    async def cluster_overview(
        self,
        source: Source,
        window: Optional[timedelta] = None,
        lookback: Optional[timedelta] = None,
    ) -> List[LabelRate]:
        """Rolling scrape DPM for every value of the grouping label."""
        query = overview_query(window or DEFAULT_WINDOW, self.group_label)
        return await self._label_rates(source, query, self.group_label, lookback)

    async def _label_rates(
        self,
        source: Source,
        query: str,
        label: str,
        lookback: Optional[timedelta],
    ) -> List[LabelRate]:
        time_range = TimeRange.last(lookback or DEFAULT_LOOKBACK, now=self._clock())
        rows = await self.executor.execute(source, query, time_range)

        rates = []
        for row in rows:
            points = tuple(
                (ts, value)
                for ts, value in ((ts, parse_sample_value(raw)) for ts, raw in row.samples)
                if value is not None
            )
            latest = points[-1][1] if points else row.number
            if latest is None or latest <= 0:
                continue
            rates.append(LabelRate(
                label=label,
                value=row.labels.get(label, ""),
                dpm=latest,
                points=points,
            ))

        rates.sort(key=lambda r: r.dpm, reverse=True)
        return rates
