"""Connector interface shared by every remote control protocol."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from powerchain.core.state_machine import NodeStatus


class ConnectorError(Exception):
    """Capability or protocol failure while controlling a node."""

    def __init__(
        self,
        code: str,
        message: str,
        platform: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.platform = platform
        self.details = details or {}
        super().__init__(message)


@dataclass
class ConnectionTestResult:
    """Outcome of a connectivity test."""
    success: bool
    message: str


@dataclass
class NodeStats:
    """Current resource usage, both values as fractions (0.0 - 1.0)."""
    cpu_usage: float
    ram_usage: float


@dataclass
class DiscoveredResource:
    """A VM, LXC or container found on a host's platform API."""
    name: str
    kind: str  # vm, container
    status: str
    platform_ref: dict[str, Any] = field(default_factory=dict)


class Connector(ABC):
    """Uniform control surface for one node."""

    platform: str = "unknown"

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Check that the control plane can be reached with stored credentials."""

    @abstractmethod
    async def start(self) -> None:
        """Request the node to power on. Does not wait for it to come up."""

    @abstractmethod
    async def stop(self) -> None:
        """Request the node to shut down. Does not wait for it to go down."""

    @abstractmethod
    async def get_status(self) -> NodeStatus:
        """Report the node's current status."""

    async def get_stats(self) -> NodeStats | None:
        """Report CPU/RAM usage, or None when the platform cannot."""
        return None

    async def aclose(self) -> None:
        """Release any open client connections."""
        return None
