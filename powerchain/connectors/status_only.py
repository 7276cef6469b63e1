"""Reachability-only connector for hosts without start/stop capability."""
import logging

import httpx

from powerchain.config import settings
from powerchain.connectors.base import ConnectionTestResult, Connector, ConnectorError
from powerchain.core.state_machine import NodeKind, NodeStatus

logger = logging.getLogger(__name__)

PLATFORM = "host"


def ping_url_for(kind: str, api_url: str) -> str:
    """Lightweight endpoint that answers without side effects."""
    base = api_url.rstrip("/")
    if kind == NodeKind.CONTAINER_HOST.value:
        return f"{base}/_ping"
    return f"{base}/api2/json/version"


class StatusOnlyConnector(Connector):
    """Probes a host's API; start and stop always fail.

    Any HTTP answer counts as reachable, an auth rejection included.
    """

    platform = PLATFORM

    def __init__(
        self,
        name: str,
        ping_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.ping_url = ping_url
        self._transport = transport

    async def _ping(self) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=settings.connectors.ping_timeout_seconds,
            verify=False,  # Homelab hosts commonly use self-signed certificates
            transport=self._transport,
        ) as client:
            return await client.get(self.ping_url)

    async def test_connection(self) -> ConnectionTestResult:
        try:
            response = await self._ping()
        except httpx.HTTPError as e:
            return ConnectionTestResult(False, f"{self.name} unreachable: {e}")
        return ConnectionTestResult(
            True, f"{self.name} reachable (HTTP {response.status_code})"
        )

    async def start(self) -> None:
        raise ConnectorError(
            "NO_START_CAPABILITY",
            f"{self.name} cannot be started: no WoL/SSH configured",
            PLATFORM,
        )

    async def stop(self) -> None:
        raise ConnectorError(
            "NO_STOP_CAPABILITY",
            f"{self.name} cannot be stopped: no SSH configured",
            PLATFORM,
        )

    async def get_status(self) -> NodeStatus:
        try:
            await self._ping()
        except httpx.HTTPError as e:
            logger.debug(f"{self.name} ping failed: {e}")
            return NodeStatus.OFFLINE
        return NodeStatus.ONLINE
