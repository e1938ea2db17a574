"""
Telemetry module for DPM Finder.

Provides:
- Query execution against Prometheus-compatible sources
- Active series discovery
- DPM estimation (per series, per label, per cluster)
- Concurrent, generation-tagged ranking across sources
"""

from dpm_finder.telemetry.models import (
    Source,
    TimeRange,
    QueryRow,
    SeriesCandidate,
    RateSample,
    LabelRate,
    RankingFailure,
    RankedListSnapshot,
    parse_sample_value,
    promql_duration,
)

from dpm_finder.telemetry.query_executor import (
    QueryExecutor,
    PrometheusQueryExecutor,
)

from dpm_finder.telemetry.registry import SourceRegistry

from dpm_finder.telemetry.discovery import SeriesDiscoverer

from dpm_finder.telemetry.rates import (
    RateEstimator,
    BREAKDOWN_LABELS,
    rate_query,
    breakdown_query,
    overview_query,
)

from dpm_finder.telemetry.ranking import RankingAggregator

__all__ = [
    # Models
    "Source",
    "TimeRange",
    "QueryRow",
    "SeriesCandidate",
    "RateSample",
    "LabelRate",
    "RankingFailure",
    "RankedListSnapshot",
    "parse_sample_value",
    "promql_duration",
    # Execution
    "QueryExecutor",
    "PrometheusQueryExecutor",
    "SourceRegistry",
    # Discovery and rates
    "SeriesDiscoverer",
    "RateEstimator",
    "BREAKDOWN_LABELS",
    "rate_query",
    "breakdown_query",
    "overview_query",
    # Ranking
    "RankingAggregator",
]
