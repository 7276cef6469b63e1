"""Docker Engine connector for containers."""
import logging
from typing import Any

import httpx

from powerchain.connectors.base import (
    ConnectionTestResult,
    Connector,
    ConnectorError,
    DiscoveredResource,
    NodeStats,
)
from powerchain.connectors.docker_client import DockerApiError, DockerClient
from powerchain.core.state_machine import NodeKind, NodeStatus

logger = logging.getLogger(__name__)

PLATFORM = "docker"

STATE_MAP = {
    "running": NodeStatus.RUNNING,
    "paused": NodeStatus.PAUSED,
    "exited": NodeStatus.STOPPED,
    "created": NodeStatus.STOPPED,
    "dead": NodeStatus.ERROR,
}


def map_docker_state(state: str | None) -> NodeStatus:
    """Map a Docker container state to the shared status enum."""
    return STATE_MAP.get((state or "").lower(), NodeStatus.UNKNOWN)


def compute_cpu_fraction(stats: dict[str, Any]) -> float:
    """CPU usage as a fraction of the host, from a one-shot stats payload."""
    cpu = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    return cpu_delta / system_delta


class DockerConnector(Connector):
    """Controls one container, or lists containers when no reference is given."""

    platform = PLATFORM

    def __init__(
        self,
        client: DockerClient,
        platform_ref: dict[str, Any] | None = None,
    ):
        self.client = client
        self.platform_ref = platform_ref or {}

    async def aclose(self) -> None:
        await self.client.close()

    def _container_id(self) -> str:
        container_id = self.platform_ref.get("container_id")
        if not container_id:
            raise ConnectorError(
                "DOCKER_INVALID_REF",
                f"Invalid Docker reference: {self.platform_ref}",
                PLATFORM,
                {"platform_ref": self.platform_ref},
            )
        return container_id

    async def test_connection(self) -> ConnectionTestResult:
        try:
            ok = await self.client.ping()
        except httpx.HTTPError as e:
            return ConnectionTestResult(
                False, f"Docker API unreachable at {self.client.api_url}: {e}"
            )
        if not ok:
            return ConnectionTestResult(False, "Docker API ping failed")
        return ConnectionTestResult(True, f"Connected to Docker at {self.client.api_url}")

    async def start(self) -> None:
        container_id = self._container_id()
        try:
            await self.client.post_lifecycle(f"/containers/{container_id}/start")
        except (DockerApiError, httpx.HTTPError) as e:
            raise ConnectorError(
                "DOCKER_START_FAILED",
                f"Failed to start container {container_id}: {e}",
                PLATFORM,
                {"container_id": container_id, "body": getattr(e, "body", "")},
            ) from e

    async def stop(self) -> None:
        container_id = self._container_id()
        try:
            await self.client.post_lifecycle(f"/containers/{container_id}/stop")
        except (DockerApiError, httpx.HTTPError) as e:
            raise ConnectorError(
                "DOCKER_STOP_FAILED",
                f"Failed to stop container {container_id}: {e}",
                PLATFORM,
                {"container_id": container_id, "body": getattr(e, "body", "")},
            ) from e

    async def get_status(self) -> NodeStatus:
        container_id = self._container_id()
        try:
            data = await self.client.get(f"/containers/{container_id}/json")
        except (DockerApiError, httpx.HTTPError) as e:
            logger.warning(f"Docker inspect failed for {container_id}: {e}")
            return NodeStatus.ERROR
        return map_docker_state((data.get("State") or {}).get("Status"))

    async def get_stats(self) -> NodeStats | None:
        container_id = self._container_id()
        try:
            stats = await self.client.get(
                f"/containers/{container_id}/stats", params={"stream": "false"}
            )
        except (DockerApiError, httpx.HTTPError) as e:
            logger.debug(f"Docker stats unavailable for {container_id}: {e}")
            return None
        memory = stats.get("memory_stats") or {}
        limit = memory.get("limit") or 0
        return NodeStats(
            cpu_usage=compute_cpu_fraction(stats),
            ram_usage=(memory.get("usage") or 0) / limit if limit > 0 else 0.0,
        )

    async def list_resources(self) -> list[DiscoveredResource]:
        """List all containers, stopped ones included."""
        try:
            containers = await self.client.get("/containers/json", params={"all": "true"})
        except (DockerApiError, httpx.HTTPError) as e:
            raise ConnectorError(
                "DOCKER_DISCOVERY_FAILED",
                f"Failed to list Docker containers: {e}",
                PLATFORM,
            ) from e

        discovered = []
        for c in containers or []:
            names = c.get("Names") or []
            name = names[0].lstrip("/") if names else c["Id"][:12]
            discovered.append(
                DiscoveredResource(
                    name=name,
                    kind=NodeKind.CONTAINER.value,
                    status=map_docker_state(c.get("State")).value,
                    platform_ref={"container_id": c["Id"], "image": c.get("Image")},
                )
            )
        return discovered
