"""
Base configuration system for DPM Finder.

Features:
- Dataclass-based configuration with type hints
- YAML file loading with environment variable interpolation
- Validation and defaults
"""

from __future__ import annotations

import os
import re
import asyncio
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
    TypeVar,
    Type,
    Union,
)
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")

# Singleton config instance
_config_instance: Optional["DPMFinderConfig"] = None
_config_lock = asyncio.Lock()

_SECTIONS = ("query", "fleet", "llm")


def _interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in config values.

    Supports formats:
    - ${VAR_NAME} - Required, raises if not set
    - ${VAR_NAME:-default} - Optional with default
    - ${VAR_NAME:?error message} - Required with custom error
    """
    if isinstance(value, str):
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(?:(:-)([^}]*))?(?:(:\?)([^}]*))?\}"

        def replace_var(match: re.Match) -> str:
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) or ""
            has_error = match.group(4) is not None
            error_msg = match.group(5) or f"Required environment variable {var_name} is not set"

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            elif has_error:
                raise ValueError(error_msg)
            elif match.group(0) == value:
                raise ValueError(f"Environment variable {var_name} is not set")
            # Part of a larger string: leave untouched
            return match.group(0)

        return re.sub(pattern, replace_var, value)

    elif isinstance(value, dict):
        return {k: _interpolate_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_interpolate_env_vars(item) for item in value]

    return value


def _coerce_type(value: Any, target_type: Any) -> Any:
    """Coerce a value to the target type (annotations arrive as strings)."""
    if value is None:
        return None

    type_name = target_type if isinstance(target_type, str) else getattr(target_type, "__name__", "")

    if type_name.startswith("Optional["):
        type_name = type_name[len("Optional["):-1]

    if type_name == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if type_name == "int":
        return int(float(value)) if value != "" else 0
    if type_name == "float":
        return float(value) if value != "" else 0.0
    if type_name == "str":
        return str(value)
    if type_name == "Path":
        return Path(value).expanduser()

    if type_name.startswith("List[") and not isinstance(value, list):
        return [value]

    return value


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


@dataclass
class BaseConfig:
    """
    Base configuration class with YAML loading and env var interpolation.
    """

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create config from dictionary with env var interpolation."""
        interpolated = _interpolate_env_vars(data)

        field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}

        # Unknown keys are ignored
        filtered = {}
        for key, value in interpolated.items():
            if key in field_types:
                filtered[key] = _coerce_type(value, field_types[key])

        return cls(**filtered)

    @classmethod
    def from_yaml(cls: Type[T], path: Union[str, Path]) -> T:
        """Load config from YAML file with env var interpolation."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        result = {}
        for key, value in asdict(self).items():
            if isinstance(value, Path):
                result[key] = str(value)
            else:
                result[key] = value
        return result

    def merge(self: T, other: Dict[str, Any]) -> T:
        """Create new config with overrides merged in."""
        current = self.to_dict()
        interpolated = _interpolate_env_vars(other)
        current.update(interpolated)
        return self.__class__.from_dict(current)


@dataclass
class QueryConfig(BaseConfig):
    """Configuration for telemetry queries, discovery and ranking."""

    timeout_seconds: float = field(
        default_factory=lambda: _env_float("DPMFINDER_QUERY_TIMEOUT", "15.0")
    )
    window_minutes: float = field(
        default_factory=lambda: _env_float("DPMFINDER_WINDOW_MINUTES", "5")
    )

    # Only series carrying this label with a non-empty value are considered
    group_label: str = field(
        default_factory=lambda: os.getenv("DPMFINDER_GROUP_LABEL", "cluster")
    )

    # Best-effort cap on discovered series per source
    max_series_per_source: int = field(
        default_factory=lambda: _env_int("DPMFINDER_MAX_SERIES", "10")
    )
    max_concurrent_per_source: int = field(
        default_factory=lambda: _env_int("DPMFINDER_MAX_CONCURRENT", "4")
    )

    retry_attempts: int = 2
    retry_delay_seconds: float = 0.5

    def validate(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.window_minutes * 60 < 1:
            raise ValueError("window_minutes must cover at least one second")
        if self.max_series_per_source < 1:
            raise ValueError("max_series_per_source must be at least 1")
        if self.max_concurrent_per_source < 1:
            raise ValueError("max_concurrent_per_source must be at least 1")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts cannot be negative")


@dataclass
class FleetConfig(BaseConfig):
    """Configuration for the Fleet Management collector registry."""

    base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("DPMFINDER_FLEET_URL")
    )
    auth_token: Optional[str] = field(
        default_factory=lambda: os.getenv("DPMFINDER_FLEET_TOKEN")
    )

    # Collector attribute matched against the analysis target
    attribute_key: str = "cluster"
    default_target: Optional[str] = field(
        default_factory=lambda: os.getenv("DPMFINDER_DEFAULT_TARGET")
    )

    timeout_seconds: float = field(
        default_factory=lambda: _env_float("DPMFINDER_FLEET_TIMEOUT", "30.0")
    )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.auth_token)


@dataclass
class LLMConfig(BaseConfig):
    """Configuration for the completion service used for explanations."""

    provider: Optional[str] = field(
        default_factory=lambda: os.getenv("DPMFINDER_LLM_PROVIDER")
    )
    model: str = field(
        default_factory=lambda: os.getenv("DPMFINDER_LLM_MODEL", "gpt-4o")
    )

    openai_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY")
    )
    anthropic_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("ANTHROPIC_API_KEY")
    )
    base_url: Optional[str] = None

    temperature: float = 0.2
    max_tokens: int = 1024
    timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass
class DPMFinderConfig(BaseConfig):
    """
    Master configuration combining all DPM Finder components.
    """

    query: QueryConfig = field(default_factory=QueryConfig)
    fleet: FleetConfig = field(default_factory=FleetConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    # Each entry: {uid, name, type, url, headers}
    sources: List[Dict[str, Any]] = field(default_factory=list)

    verbose: bool = field(
        default_factory=lambda: os.getenv("DPMFINDER_VERBOSE", "false").lower() == "true"
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DPMFinderConfig":
        """Build the full config, parsing nested sections."""
        query = QueryConfig.from_dict(data.get("query") or {})
        fleet = FleetConfig.from_dict(data.get("fleet") or {})
        llm = LLMConfig.from_dict(data.get("llm") or {})

        global_settings = _interpolate_env_vars(
            {k: v for k, v in data.items() if k not in _SECTIONS}
        )
        sources = global_settings.pop("sources", None) or []
        verbose = global_settings.pop("verbose", None)

        config = cls(query=query, fleet=fleet, llm=llm, sources=list(sources))
        if verbose is not None:
            config.verbose = _coerce_type(verbose, "bool")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query.to_dict(),
            "fleet": self.fleet.to_dict(),
            "llm": self.llm.to_dict(),
            "sources": list(self.sources),
            "verbose": self.verbose,
        }

    @classmethod
    def from_yaml_dir(cls, config_dir: Union[str, Path]) -> "DPMFinderConfig":
        """Load config from a directory with one YAML file per section."""
        import yaml

        config_dir = Path(config_dir)
        data: Dict[str, Any] = {}

        for section in _SECTIONS:
            section_file = config_dir / f"{section}.yaml"
            if section_file.exists():
                with open(section_file, "r") as f:
                    data[section] = yaml.safe_load(f) or {}

        sources_file = config_dir / "sources.yaml"
        if sources_file.exists():
            with open(sources_file, "r") as f:
                data["sources"] = yaml.safe_load(f) or []

        return cls.from_dict(data)


async def load_config(
    path: Optional[Union[str, Path]] = None,
    reload: bool = False,
) -> DPMFinderConfig:
    """
    Load or get cached configuration.

    Args:
        path: Path to config file or directory. If None, uses defaults.
        reload: Force reload even if cached.

    Returns:
        DPMFinderConfig instance.
    """
    global _config_instance

    if _config_instance is not None and not reload:
        return _config_instance

    async with _config_lock:
        if _config_instance is not None and not reload:
            return _config_instance

        if path is None:
            config = DPMFinderConfig()
        elif Path(path).is_dir():
            config = DPMFinderConfig.from_yaml_dir(path)
        else:
            config = DPMFinderConfig.from_yaml(path)

        config.query.validate()
        _config_instance = config
        logger.info(
            f"Configuration loaded: {len(config.sources)} sources, "
            f"model={config.llm.model}"
        )
        return _config_instance


def get_config() -> Optional[DPMFinderConfig]:
    """Get cached config synchronously. Returns None if not loaded."""
    return _config_instance
