"""Node registry: registration, discovery, import and deletion."""
import logging
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.connectors.base import ConnectionTestResult, ConnectorError, DiscoveredResource
from powerchain.connectors.factory import build_platform_connector, resolve_connector
from powerchain.core.dependency_graph import (
    DependencyGraph,
    DependencyGraphService,
    NodeNotFoundError,
)
from powerchain.core.operation_log import OperationLogService
from powerchain.core.state_machine import GUEST_KINDS, HOST_KINDS, NodeKind
from powerchain.db.models import Cascade, DependencyLink, InactivityRule, Node
from powerchain.utils.crypto import encrypt_json, encrypt_value
from powerchain.utils.network import MAC_PATTERN, normalize_mac

logger = logging.getLogger(__name__)

SOURCE = "nodes"


class NodeValidationError(Exception):
    """Node configuration rejected before anything is written."""


class NodeService:
    """Create, discover and remove nodes."""

    @staticmethod
    async def get_node(db: AsyncSession, node_id: str) -> Node:
        node = await db.get(Node, node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    @staticmethod
    async def list_nodes(
        db: AsyncSession,
        kind: str | None = None,
        parent_id: str | None = None,
        status: str | None = None,
    ) -> list[Node]:
        query = select(Node)
        if kind:
            query = query.where(Node.kind == kind)
        if parent_id:
            query = query.where(Node.parent_id == parent_id)
        if status:
            query = query.where(Node.status == status)
        result = await db.execute(query.order_by(Node.name))
        return list(result.scalars().all())

    @staticmethod
    async def register_node(
        db: AsyncSession,
        name: str,
        kind: str,
        ip_address: str | None = None,
        mac_address: str | None = None,
        ssh_user: str | None = None,
        ssh_password: str | None = None,
        api_url: str | None = None,
        api_credentials: dict[str, Any] | None = None,
        capabilities: dict[str, Any] | None = None,
        platform_ref: dict[str, Any] | None = None,
        parent_id: str | None = None,
        confirm_before_shutdown: bool = False,
        status: str = "unknown",
    ) -> Node:
        """
        Register a node, encrypting its credentials.

        When ``parent_id`` is set the structural link to the host is created
        in the same transaction.

        Raises:
            NodeValidationError: Kind/parent combination or MAC is invalid
            NodeNotFoundError: ``parent_id`` does not exist
        """
        if kind not in {k.value for k in NodeKind}:
            raise NodeValidationError(f"Unknown node kind: {kind}")

        parent = None
        if parent_id:
            if kind == NodeKind.PHYSICAL.value:
                raise NodeValidationError("A physical node cannot have a parent")
            parent = await db.get(Node, parent_id)
            if parent is None:
                raise NodeNotFoundError(parent_id)
            if parent.kind not in HOST_KINDS:
                raise NodeValidationError(
                    f"Parent {parent.name} is a {parent.kind}, not a host"
                )
        elif kind in GUEST_KINDS:
            raise NodeValidationError(f"A {kind} node needs a parent host")

        if mac_address:
            if not MAC_PATTERN.match(mac_address):
                raise NodeValidationError(f"Invalid MAC address format: {mac_address}")
            mac_address = normalize_mac(mac_address)

        node = Node(
            name=name,
            kind=kind,
            status=status,
            ip_address=ip_address,
            mac_address=mac_address,
            ssh_user=ssh_user,
            ssh_credentials_encrypted=encrypt_value(ssh_password) if ssh_password else None,
            api_url=api_url,
            api_credentials_encrypted=encrypt_json(api_credentials) if api_credentials else None,
            capabilities=capabilities,
            platform_ref=platform_ref,
            parent_id=parent_id,
            confirm_before_shutdown=confirm_before_shutdown,
        )
        db.add(node)
        await db.flush()

        if parent is not None:
            await DependencyGraphService.create_link(
                db, parent.id, node.id, is_structural=True
            )
        await db.refresh(node)

        await OperationLogService.log(
            db,
            "info",
            SOURCE,
            f"Registered {kind} node {name}",
            node_id=node.id,
        )
        return node

    @staticmethod
    async def discover_resources(
        db: AsyncSession, parent_id: str
    ) -> list[DiscoveredResource]:
        """List VMs/LXCs or containers on a host through its platform API.

        Raises:
            NodeNotFoundError: Unknown host
            ConnectorError: Host has no usable API or the listing failed
        """
        host = await NodeService.get_node(db, parent_id)
        connector = build_platform_connector(host)
        try:
            resources = await connector.list_resources()
        finally:
            await connector.aclose()
        logger.info(f"Discovered {len(resources)} resources on {host.name}")
        return resources

    @staticmethod
    async def import_discovered(
        db: AsyncSession,
        parent_id: str,
        resources: list[DiscoveredResource],
    ) -> list[Node]:
        """Create child nodes for discovered resources not yet imported."""
        host = await NodeService.get_node(db, parent_id)
        existing = await NodeService.list_nodes(db, parent_id=host.id)
        known_refs = [n.platform_ref for n in existing if n.platform_ref]

        created = []
        for resource in resources:
            if resource.platform_ref in known_refs:
                logger.debug(f"{resource.name} already imported under {host.name}")
                continue
            node = await NodeService.register_node(
                db,
                name=resource.name,
                kind=resource.kind,
                platform_ref=resource.platform_ref,
                parent_id=host.id,
                status=resource.status,
            )
            known_refs.append(resource.platform_ref)
            created.append(node)

        await OperationLogService.log(
            db,
            "info",
            SOURCE,
            f"Imported {len(created)} of {len(resources)} resources from {host.name}",
            node_id=host.id,
        )
        return created

    @staticmethod
    async def delete_node(db: AsyncSession, node_id: str) -> list[str]:
        """Delete a node with everything it hosts, leaves first.

        Links touching the removed nodes, their rules and their cascades go
        with them. Returns the deleted node ids.
        """
        node = await NodeService.get_node(db, node_id)
        graph = await DependencyGraph.load(db)
        doomed = list(reversed(graph.structural_descendants(node.id))) + [node.id]

        await db.execute(
            delete(DependencyLink).where(
                or_(
                    DependencyLink.parent_id.in_(doomed),
                    DependencyLink.child_id.in_(doomed),
                )
            )
        )
        await db.execute(delete(InactivityRule).where(InactivityRule.node_id.in_(doomed)))
        await db.execute(delete(Cascade).where(Cascade.node_id.in_(doomed)))
        for doomed_id in doomed:
            await db.execute(delete(Node).where(Node.id == doomed_id))

        await OperationLogService.log(
            db,
            "info",
            SOURCE,
            f"Deleted node {node.name} and {len(doomed) - 1} hosted nodes",
            details={"deleted": doomed},
        )
        return doomed

    @staticmethod
    async def test_connection(db: AsyncSession, node_id: str) -> ConnectionTestResult:
        """Test the node's control plane with its stored credentials.

        Hosts with an API URL are tested against their platform API.
        """
        node = await NodeService.get_node(db, node_id)
        try:
            if node.kind in HOST_KINDS and node.api_url:
                connector = build_platform_connector(node)
            else:
                connector = await resolve_connector(db, node.id)
        except ConnectorError as e:
            return ConnectionTestResult(False, e.message)

        if connector is None:
            return ConnectionTestResult(False, f"{node.name} has no connector configured")

        try:
            return await connector.test_connection()
        finally:
            await connector.aclose()
