"""Remote control protocols behind one connector interface."""
from powerchain.connectors.base import (
    ConnectionTestResult,
    Connector,
    ConnectorError,
    DiscoveredResource,
    NodeStats,
)
from powerchain.connectors.factory import (
    build_connector,
    build_platform_connector,
    resolve_connector,
)

__all__ = [
    "Connector",
    "ConnectorError",
    "ConnectionTestResult",
    "DiscoveredResource",
    "NodeStats",
    "build_connector",
    "build_platform_connector",
    "resolve_connector",
]
