"""
Fleet Management collector registry client.

Talks to the ``collector.v1.CollectorService`` JSON endpoints:
- ListCollectors: all registered collectors with their attributes
- GetConfig: the active configuration of one collector
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from dpm_finder.config.base_config import FleetConfig
from dpm_finder.errors import FleetAPIError

logger = logging.getLogger(__name__)

NO_CONFIG_PLACEHOLDER = "No config returned."


@dataclass(frozen=True)
class CollectorInfo:
    """A registered collector and its attributes."""

    id: str
    attributes: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)
    name: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectorInfo":
        return cls(
            id=str(data["id"]),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
            name=data.get("name"),
        )


class CollectorRegistry(ABC):
    """Abstract collector registry."""

    @abstractmethod
    async def list_collectors(self) -> List[CollectorInfo]:
        """List all known collectors."""

    @abstractmethod
    async def get_config(self, collector_id: str) -> str:
        """Fetch a collector's current configuration text."""

    async def close(self) -> None:
        """Release network resources."""


class FleetManagementClient(CollectorRegistry):
    """
    aiohttp client for Fleet Management.

    Example:
        client = FleetManagementClient(base_url, token)
        collectors = await client.list_collectors()
        content = await client.get_config(collectors[0].id)
    """

    def __init__(
        self,
        base_url: Optional[str],
        auth_token: Optional[str],
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize client.

        Args:
            base_url: Service root, e.g. ``https://.../collector.v1.CollectorService``
            auth_token: Basic auth credential (already base64 encoded)
            timeout: Request timeout in seconds
            session: Optional shared session (not closed by ``close()``)
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.auth_token = auth_token
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config: FleetConfig) -> "FleetManagementClient":
        return cls(config.base_url, config.auth_token, timeout=config.timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.auth_token)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise FleetAPIError("Fleet credentials not configured")

        session = await self._get_session()
        url = f"{self.base_url}/{endpoint}"

        try:
            async with session.post(
                url,
                json=payload,
                headers={
                    "Authorization": f"Basic {self.auth_token}",
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    detail = (await response.text())[:200]
                    raise FleetAPIError(
                        f"Fleet API {endpoint} returned HTTP {response.status}: {detail}",
                        status=response.status,
                    )
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise FleetAPIError(f"Fleet API {endpoint} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise FleetAPIError(f"Fleet API request failed: {e}") from e
        except ValueError as e:
            raise FleetAPIError(f"Fleet API {endpoint} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise FleetAPIError(f"Fleet API {endpoint} returned unexpected payload")
        return data

    async def list_collectors(self) -> List[CollectorInfo]:
        data = await self._post("ListCollectors", {})

        collectors = []
        for entry in data.get("collectors") or []:
            try:
                collectors.append(CollectorInfo.from_dict(entry))
            except (KeyError, TypeError, AttributeError):
                logger.warning(f"Skipping malformed collector entry: {entry!r}")

        logger.debug(f"Fleet lists {len(collectors)} collector(s)")
        return collectors

    async def get_config(self, collector_id: str) -> str:
        data = await self._post("GetConfig", {"id": collector_id})
        return data.get("content") or NO_CONFIG_PLACEHOLDER

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
