"""Tests for dataclass configuration loading."""

from __future__ import annotations

import pytest
import yaml

from dpm_finder.config.base_config import (
    DPMFinderConfig,
    FleetConfig,
    LLMConfig,
    QueryConfig,
    get_config,
    load_config,
)


class TestDefaults:
    def test_query_defaults(self) -> None:
        config = QueryConfig()
        assert config.timeout_seconds == 15.0
        assert config.window_minutes == 5
        assert config.group_label == "cluster"
        assert config.max_series_per_source == 10
        assert config.max_concurrent_per_source == 4

    def test_env_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DPMFINDER_QUERY_TIMEOUT", "3.5")
        monkeypatch.setenv("DPMFINDER_FLEET_URL", "https://fleet.example/collector.v1.CollectorService")
        monkeypatch.setenv("DPMFINDER_FLEET_TOKEN", "dG9rZW4=")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        assert QueryConfig().timeout_seconds == 3.5
        assert FleetConfig().configured
        assert LLMConfig().openai_api_key == "sk-test"

    def test_fleet_not_configured_without_token(self) -> None:
        assert not FleetConfig(base_url="https://fleet.example").configured


class TestFromDict:
    def test_coerces_types(self) -> None:
        config = QueryConfig.from_dict({
            "timeout_seconds": "20",
            "max_series_per_source": "25",
            "unknown_key": "ignored",
        })
        assert config.timeout_seconds == 20.0
        assert config.max_series_per_source == 25

    def test_interpolates_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FLEET_TOKEN", "secret")
        config = FleetConfig.from_dict({
            "auth_token": "${FLEET_TOKEN}",
            "base_url": "${FLEET_URL:-https://default.example}",
        })
        assert config.auth_token == "secret"
        assert config.base_url == "https://default.example"

    def test_missing_required_env_var(self) -> None:
        with pytest.raises(ValueError, match="token required"):
            FleetConfig.from_dict({"auth_token": "${NO_SUCH_VAR:?token required}"})

    def test_nested_sections_and_sources(self) -> None:
        config = DPMFinderConfig.from_dict({
            "query": {"group_label": "env"},
            "llm": {"model": "claude-3-5-sonnet-20241022"},
            "sources": [{"uid": "prom1", "url": "http://prom1:9090"}],
            "verbose": "yes",
        })
        assert config.query.group_label == "env"
        assert config.llm.model == "claude-3-5-sonnet-20241022"
        assert config.sources == [{"uid": "prom1", "url": "http://prom1:9090"}]
        assert config.verbose is True

    def test_merge_returns_new_config(self) -> None:
        base = QueryConfig(window_minutes=5)
        merged = base.merge({"window_minutes": 10})
        assert merged.window_minutes == 10
        assert base.window_minutes == 5

    def test_round_trips_through_dict(self) -> None:
        config = DPMFinderConfig.from_dict({"fleet": {"attribute_key": "env"}})
        assert DPMFinderConfig.from_dict(config.to_dict()).fleet.attribute_key == "env"


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"timeout_seconds": 0},
            {"window_minutes": -1},
            {"window_minutes": 0.01},
            {"max_series_per_source": 0},
            {"max_concurrent_per_source": 0},
            {"retry_attempts": -1},
        ],
    )
    def test_rejects_bad_values(self, overrides) -> None:
        with pytest.raises(ValueError):
            QueryConfig(**overrides).validate()

    def test_accepts_sub_minute_window(self) -> None:
        QueryConfig(window_minutes=0.5).validate()


class TestLoadConfig:
    @pytest.mark.asyncio
    async def test_loads_yaml_file_once(self, tmp_path) -> None:
        path = tmp_path / "dpm.yaml"
        path.write_text(yaml.safe_dump({
            "query": {"max_series_per_source": 3},
            "sources": [{"uid": "prom1", "url": "http://prom1:9090"}],
        }))

        config = await load_config(path)
        again = await load_config(tmp_path / "ignored.yaml")

        assert config is again
        assert get_config() is config
        assert config.query.max_series_per_source == 3

    @pytest.mark.asyncio
    async def test_loads_yaml_directory(self, tmp_path) -> None:
        (tmp_path / "fleet.yaml").write_text(yaml.safe_dump({"default_target": "cluster=prod"}))
        (tmp_path / "sources.yaml").write_text(yaml.safe_dump([{"uid": "prom1"}]))

        config = await load_config(tmp_path, reload=True)

        assert config.fleet.default_target == "cluster=prod"
        assert config.sources == [{"uid": "prom1"}]

    @pytest.mark.asyncio
    async def test_invalid_values_are_rejected(self, tmp_path) -> None:
        path = tmp_path / "dpm.yaml"
        path.write_text(yaml.safe_dump({"query": {"timeout_seconds": 0}}))

        with pytest.raises(ValueError):
            await load_config(path, reload=True)

    @pytest.mark.asyncio
    async def test_defaults_without_path(self) -> None:
        config = await load_config()
        assert config.sources == []
        assert config.llm.model == "gpt-4o"

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            DPMFinderConfig.from_yaml(tmp_path / "nope.yaml")
