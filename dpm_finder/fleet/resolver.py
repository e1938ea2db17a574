"""
Collector configuration resolution.

Maps an analysis target (``cluster=prod-eu`` or just ``prod-eu``) to the
collector attributed to it and fetches that collector's live configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple, Union

from dpm_finder.fleet.client import CollectorRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectorConfig:
    """Active configuration of one collector. Never cached."""

    collector_id: str
    content: str


@dataclass(frozen=True)
class CollectorNotFound:
    """No collector is attributed to the target. A normal outcome."""

    attribute: str
    value: str

    @property
    def message(self) -> str:
        return f"No collector found for {self.attribute}: {self.value}"


ResolveResult = Union[CollectorConfig, CollectorNotFound]


def parse_target(target: str, default_key: str = "cluster") -> Tuple[str, str]:
    """
    Split a target into ``(attribute, value)``.

    ``"cluster=prod"`` -> ``("cluster", "prod")``; ``"prod"`` uses ``default_key``.
    """
    target = target.strip()
    if not target:
        raise ValueError("target must not be empty")

    if "=" in target:
        key, _, value = target.partition("=")
        key, value = key.strip(), value.strip().strip('"')
        if not key or not value:
            raise ValueError(f"Malformed target: {target!r}")
        return key, value

    return default_key, target


class CollectorConfigResolver:
    """
    Two-step lookup: find the collector by attribute, then fetch its config.

    Registry failures raise ``FleetAPIError``; an unmatched target returns
    ``CollectorNotFound``.
    """

    def __init__(self, registry: CollectorRegistry, attribute_key: str = "cluster"):
        self.registry = registry
        self.attribute_key = attribute_key

    async def resolve(self, target: str) -> ResolveResult:
        attribute, value = parse_target(target, self.attribute_key)

        collectors = await self.registry.list_collectors()
        match = next(
            (c for c in collectors if c.attributes.get(attribute) == value),
            None,
        )

        if match is None:
            logger.info(f"No collector attributed to {attribute}={value}")
            return CollectorNotFound(attribute, value)

        content = await self.registry.get_config(match.id)
        logger.info(f"Resolved {attribute}={value} to collector {match.id}")
        return CollectorConfig(collector_id=match.id, content=content)
