"""
Fleet module for DPM Finder.

Provides:
- Fleet Management collector registry client
- Target-to-collector configuration resolution
"""

from dpm_finder.fleet.client import (
    CollectorInfo,
    CollectorRegistry,
    FleetManagementClient,
    NO_CONFIG_PLACEHOLDER,
)

from dpm_finder.fleet.resolver import (
    CollectorConfig,
    CollectorNotFound,
    CollectorConfigResolver,
    parse_target,
)

__all__ = [
    "CollectorInfo",
    "CollectorRegistry",
    "FleetManagementClient",
    "NO_CONFIG_PLACEHOLDER",
    "CollectorConfig",
    "CollectorNotFound",
    "CollectorConfigResolver",
    "parse_target",
]
