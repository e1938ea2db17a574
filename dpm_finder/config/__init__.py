"""
Configuration module for DPM Finder.

Provides dataclass-based configuration with:
- YAML file loading
- Environment variable interpolation
- Sensible defaults
"""

from dpm_finder.config.base_config import (
    BaseConfig,
    QueryConfig,
    FleetConfig,
    LLMConfig,
    DPMFinderConfig,
    load_config,
    get_config,
)

__all__ = [
    "BaseConfig",
    "QueryConfig",
    "FleetConfig",
    "LLMConfig",
    "DPMFinderConfig",
    "load_config",
    "get_config",
]
