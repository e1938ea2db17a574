"""
Utilities module for DPM Finder.

Provides:
- Async helpers (bounded concurrency, retries, generation tags)
- Structured logging configuration
"""

from dpm_finder.utils.async_helpers import (
    AsyncSemaphore,
    GenerationCounter,
    async_retry,
    cancel_tasks,
)

from dpm_finder.utils.logging_config import (
    setup_logging,
    LoggingConfig,
    LogContext,
    StructuredFormatter,
    ConsoleFormatter,
    set_generation,
    set_stage,
    log_duration,
)

__all__ = [
    # Async helpers
    "AsyncSemaphore",
    "GenerationCounter",
    "async_retry",
    "cancel_tasks",
    # Logging
    "setup_logging",
    "LoggingConfig",
    "LogContext",
    "StructuredFormatter",
    "ConsoleFormatter",
    "set_generation",
    "set_stage",
    "log_duration",
]
