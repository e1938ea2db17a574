"""
Source registry built from configuration.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from dpm_finder.telemetry.models import PROMETHEUS_TYPE, Source

logger = logging.getLogger(__name__)


class SourceRegistry:
    """
    Known telemetry sources, in configuration order.

    Example:
        registry = SourceRegistry.from_config(config.sources)
        sources = registry.select(["prom1", "prom2"])
    """

    def __init__(self, sources: Iterable[Source] = ()):
        self._sources: Dict[str, Source] = {}
        for source in sources:
            self.add(source)

    @classmethod
    def from_config(cls, entries: Iterable[Dict[str, Any]]) -> "SourceRegistry":
        registry = cls()
        for entry in entries:
            try:
                registry.add(Source.from_dict(entry))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid source entry {entry!r}: {e}")
        return registry

    def add(self, source: Source) -> None:
        if source.uid in self._sources:
            raise ValueError(f"Duplicate source uid: {source.uid}")
        self._sources[source.uid] = source

    def get(self, uid: str) -> Optional[Source]:
        return self._sources.get(uid)

    def list(self, capability: Optional[str] = PROMETHEUS_TYPE) -> List[Source]:
        """List sources, filtered by capability tag unless ``capability`` is None."""
        return [
            s for s in self._sources.values()
            if capability is None or s.type == capability
        ]

    def select(self, uids: Optional[Iterable[str]] = None) -> List[Source]:
        """
        Resolve uids to queryable sources; ``None`` selects all of them.

        Raises:
            KeyError: Unknown uid
        """
        if uids is None:
            return self.list()

        selected = []
        for uid in uids:
            source = self._sources.get(uid)
            if source is None:
                raise KeyError(f"Unknown source: {uid}")
            if not source.queryable:
                logger.warning(f"Source {uid} is type {source.type!r}, not queryable")
                continue
            selected.append(source)
        return selected

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, uid: object) -> bool:
        return uid in self._sources
