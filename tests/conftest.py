"""Shared fixtures for the DPM Finder test suite."""

from __future__ import annotations

import os

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from dpm_finder.config import base_config
from dpm_finder.config.base_config import QueryConfig
from dpm_finder.telemetry.models import Source
from tests.helpers.http import FakeService

# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop DPMFINDER_* and vendor keys so defaults are predictable."""
    for key in list(os.environ):
        if key.startswith("DPMFINDER_"):
            monkeypatch.delenv(key, raising=False)
    for key in ("OPENAI_API_KEY", "OPENAI_ORG_ID", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(base_config, "_config_instance", None)


# ---------------------------------------------------------------------------
# Sources and config
# ---------------------------------------------------------------------------


@pytest.fixture
def prom1() -> Source:
    return Source(uid="prom1", name="Prometheus 1", url="http://prom1.invalid")


@pytest.fixture
def prom2() -> Source:
    return Source(uid="prom2", name="Prometheus 2", url="http://prom2.invalid")


@pytest.fixture
def query_config() -> QueryConfig:
    """Query settings with retries that do not sleep."""
    return QueryConfig(
        timeout_seconds=5.0,
        window_minutes=5,
        group_label="cluster",
        max_series_per_source=10,
        max_concurrent_per_source=4,
        retry_attempts=2,
        retry_delay_seconds=0.0,
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def fake_service():
    """A FakeService served on localhost; yields (service, server)."""
    service = FakeService()
    server = TestServer(service.build_app())
    await server.start_server()
    try:
        yield service, server
    finally:
        await server.close()
