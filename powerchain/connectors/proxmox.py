"""Proxmox VE connector for VMs and LXC containers."""
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
from powerchain.connectors.proxmox_client import ProxmoxApiError, ProxmoxClient
from powerchain.core.state_machine import NodeKind, NodeStatus

logger = logging.getLogger(__name__)

PLATFORM = "proxmox"

STATUS_MAP = {
    "running": NodeStatus.RUNNING,
    "stopped": NodeStatus.STOPPED,
    "paused": NodeStatus.PAUSED,
}

RESOURCE_KINDS = {
    "qemu": NodeKind.VM.value,
    "lxc": NodeKind.CONTAINER.value,
}


def map_proxmox_status(data: dict[str, Any]) -> NodeStatus:
    """Map a Proxmox status payload to the shared status enum."""
    # Paused VMs still report status "running"; qmpstatus tells them apart
    if data.get("qmpstatus") == "paused":
        return NodeStatus.PAUSED
    return STATUS_MAP.get(str(data.get("status", "")), NodeStatus.UNKNOWN)


class ProxmoxConnector(Connector):
    """Controls one VM/LXC, or lists resources when no reference is given."""

    platform = PLATFORM

    def __init__(
        self,
        client: ProxmoxClient,
        platform_ref: dict[str, Any] | None = None,
    ):
        self.client = client
        self.platform_ref = platform_ref or {}

    async def aclose(self) -> None:
        await self.client.close()

    def _resource_path(self) -> str:
        ref = self.platform_ref
        pve_node = ref.get("node")
        vmid = ref.get("vmid")
        vm_type = ref.get("type", "qemu")
        if not pve_node or not vmid or vm_type not in RESOURCE_KINDS:
            raise ConnectorError(
                "PROXMOX_INVALID_REF",
                f"Invalid Proxmox reference: {ref}",
                PLATFORM,
                {"platform_ref": ref},
            )
        return f"/nodes/{pve_node}/{vm_type}/{vmid}"

    def _wrap_error(
        self,
        error: Exception,
        operation: str,
        code: str = "PROXMOX_API_ERROR",
        message: str | None = None,
    ) -> ConnectorError:
        if isinstance(error, ProxmoxApiError) and error.status_code in (401, 403):
            return ConnectorError(
                "PROXMOX_AUTH_FAILED", "Invalid Proxmox credentials", PLATFORM
            )
        if isinstance(error, (httpx.ConnectError, httpx.TimeoutException)):
            return ConnectorError(
                "PROXMOX_UNREACHABLE",
                f"Proxmox API unreachable at {self.client.base_url}",
                PLATFORM,
                {"url": self.client.base_url},
            )
        return ConnectorError(
            code,
            message or f"Proxmox API error ({operation}): {error}",
            PLATFORM,
            {"platform_ref": self.platform_ref} if self.platform_ref else None,
        )

    async def test_connection(self) -> ConnectionTestResult:
        try:
            version = await self.client.get("/version")
        except (ProxmoxApiError, httpx.HTTPError) as e:
            return ConnectionTestResult(False, self._wrap_error(e, "test").message)
        release = (version or {}).get("version", "unknown")
        return ConnectionTestResult(True, f"Connected to Proxmox VE {release}")

    async def start(self) -> None:
        path = self._resource_path()
        try:
            await self.client.post(f"{path}/status/start")
        except (ProxmoxApiError, httpx.HTTPError) as e:
            raise self._wrap_error(
                e, "start", "PROXMOX_START_FAILED", f"Failed to start {path}: {e}"
            ) from e

    async def stop(self) -> None:
        path = self._resource_path()
        try:
            await self.client.post(f"{path}/status/shutdown")
        except (ProxmoxApiError, httpx.HTTPError) as e:
            raise self._wrap_error(
                e, "shutdown", "PROXMOX_SHUTDOWN_FAILED", f"Failed to shut down {path}: {e}"
            ) from e

    async def get_status(self) -> NodeStatus:
        path = self._resource_path()
        try:
            data = await self.client.get(f"{path}/status/current")
        except (ProxmoxApiError, httpx.HTTPError) as e:
            logger.warning(f"Proxmox status check failed for {path}: {e}")
            return NodeStatus.ERROR
        return map_proxmox_status(data or {})

    async def get_stats(self) -> NodeStats | None:
        path = self._resource_path()
        try:
            data = await self.client.get(f"{path}/status/current")
        except (ProxmoxApiError, httpx.HTTPError) as e:
            logger.debug(f"Proxmox stats unavailable for {path}: {e}")
            return None
        data = data or {}
        maxmem = data.get("maxmem") or 0
        return NodeStats(
            # Proxmox already reports cpu as a fraction of the allotted cores
            cpu_usage=float(data.get("cpu") or 0.0),
            ram_usage=(data.get("mem") or 0) / maxmem if maxmem > 0 else 0.0,
        )

    async def list_resources(self) -> list[DiscoveredResource]:
        """List every VM and LXC across the cluster, templates excluded."""
        try:
            resources = await self.client.get("/cluster/resources", params={"type": "vm"})
        except (ProxmoxApiError, httpx.HTTPError) as e:
            raise ConnectorError(
                "PROXMOX_DISCOVERY_FAILED",
                f"Failed to list Proxmox resources: {e}",
                PLATFORM,
            ) from e

        discovered = []
        for r in resources or []:
            if r.get("template") == 1 or r.get("type") not in RESOURCE_KINDS:
                continue
            discovered.append(
                DiscoveredResource(
                    name=r.get("name") or f"{r['type']}-{r['vmid']}",
                    kind=RESOURCE_KINDS[r["type"]],
                    status=map_proxmox_status(r).value,
                    platform_ref={"node": r["node"], "vmid": r["vmid"], "type": r["type"]},
                )
            )
        return discovered
