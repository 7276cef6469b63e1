"""Resolve which connector controls a node.

``build_connector`` is a pure mapping from a node (and its structural parent)
to one of the connector variants:

    physical                       -> WolSshConnector (MAC required)
    vm / container                 -> ProxmoxConnector or DockerConnector,
                                      chosen by the parent host's kind
    hypervisor/container host      -> WolSshConnector when SSH is configured,
                                      StatusOnlyConnector when only an API URL is,
                                      None otherwise

``None`` means the node is a pass-through with nothing to control or probe.
"""
import logging
from typing import Callable

from cryptography.fernet import InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.connectors.base import Connector, ConnectorError
from powerchain.connectors.docker import DockerConnector
from powerchain.connectors.docker_client import DockerClient
from powerchain.connectors.proxmox import ProxmoxConnector
from powerchain.connectors.proxmox_client import ProxmoxClient
from powerchain.connectors.status_only import StatusOnlyConnector, ping_url_for
from powerchain.connectors.wol_ssh import WolSshConnector
from powerchain.core.state_machine import GUEST_KINDS, HOST_KINDS, NodeKind
from powerchain.db.models import Node
from powerchain.utils.crypto import decrypt_json, decrypt_value

logger = logging.getLogger(__name__)

DEFAULT_SSH_USER = "root"


def _decrypt_ssh_password(node: Node, decrypt: Callable[[str], str]) -> str | None:
    if not node.ssh_credentials_encrypted:
        return None
    try:
        return decrypt(node.ssh_credentials_encrypted)
    except (InvalidToken, ValueError) as e:
        raise ConnectorError(
            "DECRYPT_FAILED",
            f"Cannot decrypt SSH credentials of {node.name}",
            "wol-ssh",
            {"node_id": node.id},
        ) from e


def _decrypt_api_credentials(host: Node) -> dict:
    if not host.api_credentials_encrypted:
        return {}
    try:
        return decrypt_json(host.api_credentials_encrypted)
    except (InvalidToken, ValueError) as e:
        raise ConnectorError(
            "DECRYPT_FAILED",
            f"Cannot decrypt API credentials of {host.name}",
            "host",
            {"node_id": host.id},
        ) from e


def build_platform_connector(host: Node, platform_ref: dict | None = None) -> Connector:
    """Build the API connector of a hypervisor/container host.

    With a ``platform_ref`` the connector controls that guest; without one
    it is only good for ``test_connection`` and ``list_resources``.
    """
    capabilities = host.capabilities or {}

    if host.kind == NodeKind.HYPERVISOR_HOST.value:
        if not host.api_url:
            raise ConnectorError(
                "NO_API_URL", f"{host.name}: API URL missing", "proxmox"
            )
        credentials = _decrypt_api_credentials(host)
        client = ProxmoxClient(
            host.api_url,
            token_id=credentials.get("token_id"),
            token_secret=credentials.get("token_secret"),
            username=credentials.get("username"),
            password=credentials.get("password"),
            verify_ssl=capabilities.get("verify_ssl", False),
        )
        return ProxmoxConnector(client, platform_ref)

    if host.kind == NodeKind.CONTAINER_HOST.value:
        if not host.api_url:
            raise ConnectorError(
                "NO_API_URL", f"{host.name}: API URL missing", "docker"
            )
        client = DockerClient(
            host.api_url,
            api_version=capabilities.get("api_version"),
            verify_ssl=capabilities.get("verify_ssl", True),
        )
        return DockerConnector(client, platform_ref)

    raise ConnectorError(
        "NO_API_URL",
        f"{host.name} is not a hypervisor or container host",
        "host",
        {"kind": host.kind},
    )


def build_connector(
    node: Node,
    parent: Node | None = None,
    decrypt: Callable[[str], str] = decrypt_value,
) -> Connector | None:
    """Map a node's stored configuration to its connector variant."""
    if node.kind == NodeKind.PHYSICAL.value:
        if not node.mac_address:
            raise ConnectorError(
                "NO_MAC_ADDRESS",
                f"{node.name}: MAC address required for Wake-on-LAN",
                "wol-ssh",
            )
        return WolSshConnector(
            host=node.ip_address or "",
            ssh_user=node.ssh_user or DEFAULT_SSH_USER,
            ssh_password=_decrypt_ssh_password(node, decrypt),
            mac_address=node.mac_address,
        )

    if node.kind in GUEST_KINDS:
        if parent is None:
            return None
        if parent.kind not in HOST_KINDS:
            return None
        return build_platform_connector(parent, node.platform_ref or {})

    if node.kind in HOST_KINDS:
        if node.ip_address and node.ssh_credentials_encrypted:
            return WolSshConnector(
                host=node.ip_address,
                ssh_user=node.ssh_user or DEFAULT_SSH_USER,
                ssh_password=_decrypt_ssh_password(node, decrypt),
                mac_address=node.mac_address,
            )
        if node.api_url:
            return StatusOnlyConnector(node.name, ping_url_for(node.kind, node.api_url))
        return None

    return None


async def resolve_connector(db: AsyncSession, node_id: str) -> Connector | None:
    """Load a node (and its structural parent) and build its connector.

    Raises:
        ConnectorError: NODE_NOT_FOUND, or any capability error from
            build_connector
    """
    node = await db.get(Node, node_id)
    if node is None:
        raise ConnectorError("NODE_NOT_FOUND", f"Node {node_id} not found", "cascade")

    parent = None
    if node.parent_id:
        parent = await db.get(Node, node.parent_id)
        if parent is None:
            raise ConnectorError(
                "NODE_NOT_FOUND",
                f"Parent node {node.parent_id} of {node.name} not found",
                "cascade",
            )

    return build_connector(node, parent)
