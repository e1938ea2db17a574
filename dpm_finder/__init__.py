"""
DPM Finder - Find the metrics that drive ingestion volume

Provides:
- Concurrent ranking of active series by datapoints per minute (DPM)
  across Prometheus-compatible sources
- Per-label and per-cluster DPM breakdowns
- Collector configuration lookup through Grafana Fleet Management
- Streamed LLM explanations of what in a collector config drives DPM
"""

__version__ = "0.3.0"

# Errors
from dpm_finder.errors import (
    DPMFinderError,
    TransportError,
    SourceUnreachable,
    QueryTimeout,
    QueryError,
    QueryRejected,
    FleetAPIError,
    StreamError,
)

# Configuration
from dpm_finder.config import (
    DPMFinderConfig,
    QueryConfig,
    FleetConfig,
    LLMConfig,
    load_config,
)

# Telemetry
from dpm_finder.telemetry import (
    Source,
    TimeRange,
    RateSample,
    RankedListSnapshot,
    QueryExecutor,
    PrometheusQueryExecutor,
    SourceRegistry,
    SeriesDiscoverer,
    RateEstimator,
    RankingAggregator,
)

# Fleet
from dpm_finder.fleet import (
    FleetManagementClient,
    CollectorConfig,
    CollectorNotFound,
    CollectorConfigResolver,
)

# Annotation
from dpm_finder.annotation import (
    AnnotationPipeline,
    AnnotationStream,
    AnnotationState,
    AnnotationStatus,
    PipelineCoordinator,
    CoordinatorPhase,
    CoordinatorSnapshot,
)

__all__ = [
    "__version__",
    # Errors
    "DPMFinderError",
    "TransportError",
    "SourceUnreachable",
    "QueryTimeout",
    "QueryError",
    "QueryRejected",
    "FleetAPIError",
    "StreamError",
    # Configuration
    "DPMFinderConfig",
    "QueryConfig",
    "FleetConfig",
    "LLMConfig",
    "load_config",
    # Telemetry
    "Source",
    "TimeRange",
    "RateSample",
    "RankedListSnapshot",
    "QueryExecutor",
    "PrometheusQueryExecutor",
    "SourceRegistry",
    "SeriesDiscoverer",
    "RateEstimator",
    "RankingAggregator",
    # Fleet
    "FleetManagementClient",
    "CollectorConfig",
    "CollectorNotFound",
    "CollectorConfigResolver",
    # Annotation
    "AnnotationPipeline",
    "AnnotationStream",
    "AnnotationState",
    "AnnotationStatus",
    "PipelineCoordinator",
    "CoordinatorPhase",
    "CoordinatorSnapshot",
]
