"""Tests for the pipeline coordinator."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from dpm_finder.annotation.coordinator import (
    CoordinatorPhase,
    CoordinatorSnapshot,
    PipelineCoordinator,
)
from dpm_finder.annotation.pipeline import AnnotationPipeline, AnnotationStatus
from dpm_finder.config.base_config import DPMFinderConfig
from dpm_finder.errors import FleetAPIError
from dpm_finder.fleet.client import CollectorInfo, FleetManagementClient
from dpm_finder.fleet.resolver import CollectorConfigResolver
from dpm_finder.telemetry.ranking import RankingAggregator
from tests.helpers.fakes import FakeCompletionClient, FakeQueryExecutor, FakeRegistry

PROD_CONFIG = 'prometheus.scrape "pods" { scrape_interval = "10s" }'


def _coordinator(
    client: FakeCompletionClient,
    registry: FakeRegistry = None,
    ranking: RankingAggregator = None,
    default_target: str = None,
) -> PipelineCoordinator:
    registry = registry or FakeRegistry(
        collectors=[CollectorInfo("alloy-prod", {"cluster": "prod"})],
        configs={"alloy-prod": PROD_CONFIG},
    )
    return PipelineCoordinator(
        CollectorConfigResolver(registry),
        AnnotationPipeline(client),
        ranking=ranking,
        default_target=default_target,
    )


def _record(coordinator: PipelineCoordinator) -> List[CoordinatorSnapshot]:
    seen: List[CoordinatorSnapshot] = []
    coordinator.subscribe(seen.append)
    return seen


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_streams_to_done(self) -> None:
        client = FakeCompletionClient(chunks=["Scrape ", "interval ", "is 10s."])
        coordinator = _coordinator(client)
        seen = _record(coordinator)

        started = coordinator.select("http_requests_total", "cluster=prod")
        final = await coordinator.wait()

        assert started.phase is CoordinatorPhase.RESOLVING_CONFIG
        assert final.phase is CoordinatorPhase.DONE
        assert final.text == "Scrape interval is 10s."
        assert final.config_text == PROD_CONFIG
        assert final.collector_id == "alloy-prod"
        assert final.annotation_status is AnnotationStatus.DONE

        phases = [s.phase for s in seen]
        assert phases[0] is CoordinatorPhase.RESOLVING_CONFIG
        assert phases[-1] is CoordinatorPhase.DONE
        assert set(phases[1:-1]) == {CoordinatorPhase.STREAMING}
        assert [s.text for s in seen if s.text][:3] == [
            "Scrape ",
            "Scrape interval ",
            "Scrape interval is 10s.",
        ]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_missing_collector_never_reaches_the_model(self) -> None:
        client = FakeCompletionClient()
        coordinator = _coordinator(client)

        coordinator.select("up", "cluster=missing")
        final = await coordinator.wait()

        assert final.phase is CoordinatorPhase.ERRORED
        assert final.config_text == "No collector found for cluster: missing"
        assert final.message == "Unable to analyze config: no collector found."
        assert final.text == ""
        assert client.requests == []
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_fleet_error(self) -> None:
        registry = FakeRegistry(error=FleetAPIError("HTTP 503", status=503))
        client = FakeCompletionClient()
        coordinator = _coordinator(client, registry=registry)

        coordinator.select("up", "cluster=prod")
        final = await coordinator.wait()

        assert final.phase is CoordinatorPhase.ERRORED
        assert final.config_text == "Error fetching config."
        assert final.message.startswith("Failed to run analysis")
        assert client.requests == []
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_stream_error_keeps_partial_text(self) -> None:
        client = FakeCompletionClient(chunks=["Partial ", "answer"], fail_after=1)
        coordinator = _coordinator(client)

        coordinator.select("up", "cluster=prod")
        final = await coordinator.wait()

        assert final.phase is CoordinatorPhase.ERRORED
        assert final.text == "Partial "
        assert final.config_text == PROD_CONFIG
        assert final.annotation_status is AnnotationStatus.ERRORED
        assert "Error communicating with LLM" in final.message
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_malformed_target(self) -> None:
        coordinator = _coordinator(FakeCompletionClient())

        coordinator.select("up", "cluster=")
        final = await coordinator.wait()

        assert final.phase is CoordinatorPhase.ERRORED
        assert "Malformed target" in final.message
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_default_target(self) -> None:
        coordinator = _coordinator(FakeCompletionClient(), default_target="cluster=prod")

        snapshot = coordinator.select("up")
        final = await coordinator.wait()

        assert snapshot.target == "cluster=prod"
        assert final.phase is CoordinatorPhase.DONE
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_target_required(self) -> None:
        coordinator = _coordinator(FakeCompletionClient())
        with pytest.raises(ValueError):
            coordinator.select("up")
        await coordinator.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("metric", ["", "   "])
    async def test_metric_required(self, metric) -> None:
        client = FakeCompletionClient()
        coordinator = _coordinator(client)

        with pytest.raises(ValueError):
            coordinator.select(metric, "cluster=prod")

        assert coordinator.snapshot.phase is CoordinatorPhase.IDLE
        assert client.requests == []
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_prompt_failure_reaches_errored(self) -> None:
        class RejectingPipeline(AnnotationPipeline):
            def analyze(self, metric, config):
                raise ValueError("config too large to analyze")

        client = FakeCompletionClient()
        coordinator = PipelineCoordinator(
            CollectorConfigResolver(FakeRegistry(
                collectors=[CollectorInfo("alloy-prod", {"cluster": "prod"})],
                configs={"alloy-prod": PROD_CONFIG},
            )),
            RejectingPipeline(client),
        )

        coordinator.select("up", "cluster=prod")
        final = await coordinator.wait()

        assert final.phase is CoordinatorPhase.ERRORED
        assert final.message == "Failed to run analysis: config too large to analyze"
        assert final.config_text == PROD_CONFIG
        assert client.requests == []
        await coordinator.aclose()


class TestSupersession:
    @pytest.mark.asyncio
    async def test_new_selection_supersedes_outstanding_run(self) -> None:
        client = FakeCompletionClient(chunks=["one ", "two ", "three"], delay=0.05)
        coordinator = _coordinator(client)
        seen = _record(coordinator)

        first = coordinator.select("old_metric", "cluster=prod")
        await asyncio.sleep(0.07)
        assert coordinator.snapshot.phase is CoordinatorPhase.STREAMING

        second = coordinator.select("new_metric", "cluster=prod")
        final = await coordinator.wait()
        await asyncio.sleep(0.2)

        assert second.generation > first.generation
        assert final.metric == "new_metric"
        assert final.phase is CoordinatorPhase.DONE
        assert coordinator.snapshot == final

        superseded = [s for s in seen if s.phase is CoordinatorPhase.SUPERSEDED]
        assert len(superseded) == 1
        assert superseded[0].metric == "old_metric"

        after = seen[seen.index(superseded[0]) + 1:]
        assert all(s.generation == second.generation for s in after)
        assert all(s.metric == "new_metric" for s in after)
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_superseding_during_resolution(self) -> None:
        registry = FakeRegistry(
            collectors=[CollectorInfo("alloy-prod", {"cluster": "prod"})],
            configs={"alloy-prod": PROD_CONFIG},
            delay=0.05,
        )
        client = FakeCompletionClient()
        coordinator = _coordinator(client, registry=registry)

        coordinator.select("a", "cluster=prod")
        coordinator.select("b", "cluster=prod")
        final = await coordinator.wait()

        assert final.metric == "b"
        assert final.phase is CoordinatorPhase.DONE
        assert len(client.requests) == 1
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_close_returns_to_idle(self) -> None:
        client = FakeCompletionClient(chunks=["slow"], delay=0.1)
        coordinator = _coordinator(client)

        running = coordinator.select("up", "cluster=prod")
        await asyncio.sleep(0.02)
        idle = coordinator.close()
        await asyncio.sleep(0.2)

        assert idle.phase is CoordinatorPhase.IDLE
        assert idle.generation > running.generation
        assert coordinator.snapshot == idle
        assert idle.text == ""
        await coordinator.aclose()


class TestRanking:
    @pytest.mark.asyncio
    async def test_rank_runs_alongside_analysis(self, prom1, query_config) -> None:
        executor = FakeQueryExecutor(
            series={"prom1": ["http_requests_total", "cpu_usage"]},
            rates={("prom1", "http_requests_total"): "60"},
        )
        ranking = RankingAggregator(executor, config=query_config)
        coordinator = _coordinator(FakeCompletionClient(), ranking=ranking)

        coordinator.rank([prom1])
        coordinator.select("http_requests_total", "cluster=prod")
        settled = await ranking.wait_settled()
        final = await coordinator.wait()

        assert settled.as_rows() == [("http_requests_total", "prom1", 60.0)]
        assert coordinator.ranking_snapshot().as_rows() == settled.as_rows()
        assert final.phase is CoordinatorPhase.DONE

        await coordinator.aclose()
        assert executor.closed

    def test_rank_requires_aggregator(self, prom1) -> None:
        coordinator = _coordinator(FakeCompletionClient())
        assert coordinator.ranking_snapshot() is None
        with pytest.raises(RuntimeError):
            coordinator.rank([prom1])


def test_from_config_wires_components() -> None:
    config = DPMFinderConfig.from_dict({
        "fleet": {
            "base_url": "https://fleet.example/collector.v1.CollectorService",
            "auth_token": "abc",
            "attribute_key": "env",
            "default_target": "env=prod",
        },
        "llm": {"model": "gpt-4o", "openai_api_key": "sk-test", "max_tokens": 256},
    })

    coordinator = PipelineCoordinator.from_config(config)

    assert isinstance(coordinator.resolver.registry, FleetManagementClient)
    assert coordinator.resolver.attribute_key == "env"
    assert coordinator.pipeline.max_tokens == 256
    assert coordinator.default_target == "env=prod"
    assert coordinator.ranking is not None
