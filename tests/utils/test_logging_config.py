"""Tests for structured logging helpers."""

from __future__ import annotations

import contextvars
import json
import logging

import pytest

from dpm_finder.utils.logging_config import (
    ConsoleFormatter,
    LogContext,
    LoggingConfig,
    StructuredFormatter,
    log_duration,
    set_generation,
    set_stage,
    setup_logging,
)


def _record(message: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="dpm_finder.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestFormatters:
    def test_structured_includes_generation_stage_and_context(self) -> None:
        def run() -> dict:
            set_generation(3)
            set_stage("ranking")
            with LogContext(source="prom1"):
                return json.loads(StructuredFormatter().format(_record("settled")))

        data = contextvars.copy_context().run(run)

        assert data["message"] == "settled"
        assert data["level"] == "INFO"
        assert data["generation"] == 3
        assert data["stage"] == "ranking"
        assert data["context"] == {"source": "prom1"}

    def test_structured_omits_unset_context(self) -> None:
        data = contextvars.copy_context().run(
            lambda: json.loads(StructuredFormatter().format(_record()))
        )
        assert "generation" not in data
        assert "context" not in data

    def test_console_shows_context(self) -> None:
        def run() -> str:
            set_generation(7)
            with LogContext(metric="up"):
                return ConsoleFormatter().format(_record("estimating"))

        output = contextvars.copy_context().run(run)
        assert "gen=7" in output
        assert "metric=up" in output
        assert "estimating" in output

    def test_log_context_restores_previous(self) -> None:
        def run() -> str:
            with LogContext(source="prom1"):
                with LogContext(metric="up"):
                    pass
                return ConsoleFormatter().format(_record())

        output = contextvars.copy_context().run(run)
        assert "source=prom1" in output
        assert "metric=up" not in output


class TestLogDuration:
    def test_rejects_sync_functions(self) -> None:
        logger = logging.getLogger("dpm_finder.test")
        with pytest.raises(TypeError):
            @log_duration(logger)
            def not_async() -> None:
                pass

    @pytest.mark.asyncio
    async def test_logs_duration(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("dpm_finder.test")

        @log_duration(logger, level=logging.INFO, message="Discovery")
        async def discover() -> int:
            return 42

        with caplog.at_level(logging.INFO, logger="dpm_finder.test"):
            assert await discover() == 42

        assert any(r.getMessage().startswith("Discovery (") for r in caplog.records)


class TestSetupLogging:
    def test_env_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DPMFINDER_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DPMFINDER_LOG_FORMAT", "json")

        config = LoggingConfig()

        assert config.level == "DEBUG"
        assert config.format == "json"
        assert config.log_file is None

    def test_quiets_library_loggers(self, tmp_path) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(LoggingConfig(level="DEBUG", log_file=tmp_path / "dpm.log"))
            assert logging.getLogger("aiohttp").level == logging.WARNING
            assert logging.getLogger("dpm_finder").level == logging.DEBUG
            assert (tmp_path / "dpm.log").exists()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
