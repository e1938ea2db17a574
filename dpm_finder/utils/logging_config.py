"""
Structured logging configuration for DPM Finder.

Features:
- JSON structured logging for production
- Colored console logging for development
- Context propagation (pipeline generation, stage, extra fields)
- Duration logging for async operations
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

# Context variables for log correlation. Tasks copy the context at creation,
# so values set inside a ranking or analysis run stay scoped to it.
_generation: ContextVar[Optional[int]] = ContextVar("generation", default=None)
_stage: ContextVar[Optional[str]] = ContextVar("stage", default=None)
_extra_context: ContextVar[Dict[str, Any]] = ContextVar("extra_context", default={})

T = TypeVar("T")

_STANDARD_FIELDS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


def set_generation(generation: int) -> None:
    """Tag subsequent log records with a pipeline generation."""
    _generation.set(generation)


def set_stage(stage: str) -> None:
    """Set the current pipeline stage."""
    _stage.set(stage)


class StructuredFormatter(logging.Formatter):
    """
    JSON structured log formatter.

    Output format:
    {
        "timestamp": "2026-10-19T02:15:30.123456Z",
        "level": "INFO",
        "logger": "dpm_finder.telemetry.ranking",
        "message": "Ranking settled",
        "generation": 3,
        "stage": "ranking",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        generation = _generation.get()
        stage = _stage.get()
        extra = _extra_context.get()

        if generation is not None:
            log_data["generation"] = generation
        if stage:
            log_data["stage"] = stage
        if extra:
            log_data["context"] = extra

        record_extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }
        if record_extras:
            log_data["extra"] = record_extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Console formatter for development with colors.
    """

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        context_parts = []
        generation = _generation.get()
        stage = _stage.get()

        if generation is not None:
            context_parts.append(f"gen={generation}")
        if stage:
            context_parts.append(f"stage={stage}")
        for key, value in _extra_context.get().items():
            context_parts.append(f"{key}={value}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        output = (
            f"{self.DIM}{timestamp}{self.RESET} "
            f"{color}{self.BOLD}{record.levelname:8}{self.RESET} "
            f"{self.DIM}{record.name}{self.RESET}"
            f"{context_str}: "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)

        return output


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(
        default_factory=lambda: os.getenv("DPMFINDER_LOG_LEVEL", "INFO")
    )
    format: str = field(
        default_factory=lambda: os.getenv("DPMFINDER_LOG_FORMAT", "console")
    )  # "console" or "json"

    log_file: Optional[Path] = field(
        default_factory=lambda: Path(os.getenv("DPMFINDER_LOG_FILE", ""))
        if os.getenv("DPMFINDER_LOG_FILE") else None
    )
    max_file_size_mb: int = 20
    backup_count: int = 3

    console_enabled: bool = True

    quiet_loggers: List[str] = field(
        default_factory=lambda: [
            "aiohttp",
            "asyncio",
            "httpx",
            "httpcore",
            "openai",
            "anthropic",
        ]
    )


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure logging for DPM Finder.

    Args:
        config: Logging configuration. Uses defaults if None.
    """
    if config is None:
        config = LoggingConfig()

    level = getattr(logging, config.level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)

        if config.format == "json":
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(ConsoleFormatter())

        root_logger.addHandler(console_handler)

    if config.log_file:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    for logger_name in config.quiet_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("dpm_finder").setLevel(level)


class LogContext:
    """
    Context manager for temporary log context.

    Example:
        with LogContext(source="prom1", metric="up"):
            logger.info("Estimating")  # Includes source and metric
        logger.info("Done")  # No longer includes them
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._previous: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._previous = _extra_context.get().copy()
        new_context = self._previous.copy()
        new_context.update(self._context)
        _extra_context.set(new_context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _extra_context.set(self._previous)


def log_duration(
    logger: logging.Logger,
    level: int = logging.DEBUG,
    message: str = "Operation completed",
) -> Callable:
    """
    Decorator to log the duration of an async function.

    Example:
        @log_duration(logger, message="Series discovery")
        async def discover(...):
            ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("log_duration only wraps coroutine functions")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                duration = (time.perf_counter() - start) * 1000
                logger.debug(
                    f"{message} failed ({duration:.2f}ms): {e}",
                    extra={"duration_ms": duration, "function": func.__name__},
                )
                raise
            duration = (time.perf_counter() - start) * 1000
            logger.log(
                level,
                f"{message} ({duration:.2f}ms)",
                extra={"duration_ms": duration, "function": func.__name__},
            )
            return result

        return wrapper

    return decorator
