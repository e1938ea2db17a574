"""
Active series discovery.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Callable, List, Optional

from dpm_finder.telemetry.models import Source, TimeRange
from dpm_finder.telemetry.query_executor import QueryExecutor
from dpm_finder.utils.logging_config import log_duration

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=5)


class SeriesDiscoverer:
    """
    Lists series names recently active on a source.

    Only series carrying ``group_label`` with a non-empty value are
    considered. The result is capped at ``max_series`` names, taken in the
    order the source returned them; the cap trades coverage for a bounded
    fan-out and does not promise the list is complete.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        group_label: str = "cluster",
        max_series: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        if max_series < 1:
            raise ValueError("max_series must be at least 1")
        self.executor = executor
        self.group_label = group_label
        self.max_series = max_series
        self._clock = clock

    @property
    def matcher(self) -> str:
        return f'{{{self.group_label}=~".+"}}'

    @log_duration(logger, message="Series discovery")
    async def discover(
        self,
        source: Source,
        window: Optional[timedelta] = None,
    ) -> List[str]:
        """
        Discover distinct series names active within ``window``.

        Args:
            source: Source to inspect
            window: Look-back window (default 5 minutes)

        Returns:
            Up to ``max_series`` unique names in source order
        """
        time_range = TimeRange.last(window or DEFAULT_WINDOW, now=self._clock())
        label_sets = await self.executor.series(source, self.matcher, time_range)

        names: List[str] = []
        seen = set()
        for labels in label_sets:
            name = labels.get("__name__")
            if not name or name in seen:
                continue
            seen.add(name)
            names.append(name)
            if len(names) >= self.max_series:
                break

        logger.debug(
            f"Discovered {len(names)} series on {source.uid} "
            f"({len(label_sets)} label sets)"
        )
        return names
