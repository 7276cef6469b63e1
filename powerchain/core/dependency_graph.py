"""Dependency graph over nodes.

Edges are persisted as DependencyLink rows ``parent -> child``:

- structural: the parent hosts the child (hypervisor -> VM, docker host ->
  container). Created automatically, never deleted through the API.
- logical: the child needs the parent available (media server -> NAS).

The graph is computed in memory from the full edge set on every query;
homelab fleets are small enough that this stays cheap.
"""
import logging
from collections import deque
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.db.models import DependencyLink, Node

logger = logging.getLogger(__name__)


class LinkValidationError(Exception):
    """Proposed link rejected before any state mutation."""

    SELF_REFERENCE = "SELF_REFERENCE"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    DUPLICATE_LINK = "DUPLICATE_LINK"
    CYCLE_DETECTED = "CYCLE_DETECTED"

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class NodeNotFoundError(Exception):
    """Raised when an operation targets an unknown node."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} not found")


class LinkNotFoundError(Exception):
    """Raised when a dependency link does not exist."""

    def __init__(self, link_id: str):
        self.link_id = link_id
        super().__init__(f"Dependency link {link_id} not found")


class StructuralLinkProtected(Exception):
    """Structural links follow node ownership and cannot be removed directly."""

    def __init__(self, link_id: str):
        self.link_id = link_id
        super().__init__(
            f"Dependency link {link_id} is structural and cannot be deleted"
        )


@dataclass(frozen=True)
class Edge:
    parent_id: str
    child_id: str
    is_structural: bool


class DependencyGraph:
    """In-memory view of the edge set. All traversals return node ids."""

    def __init__(self, edges: list[Edge]):
        self.edges = edges
        self._parents: dict[str, list[Edge]] = {}
        self._children: dict[str, list[Edge]] = {}
        for edge in edges:
            self._parents.setdefault(edge.child_id, []).append(edge)
            self._children.setdefault(edge.parent_id, []).append(edge)

    @classmethod
    async def load(cls, db: AsyncSession) -> "DependencyGraph":
        result = await db.execute(select(DependencyLink))
        return cls(
            [
                Edge(link.parent_id, link.child_id, link.is_structural)
                for link in result.scalars().all()
            ]
        )

    def has_edge(self, parent_id: str, child_id: str) -> bool:
        return any(e.child_id == child_id for e in self._children.get(parent_id, []))

    def would_create_cycle(self, parent_id: str, child_id: str) -> bool:
        """True if ``parent`` is already reachable downstream of ``child``.

        Walks every edge kind: a host cannot depend on something it hosts.
        """
        stack = [child_id]
        seen = {child_id}
        while stack:
            current = stack.pop()
            if current == parent_id:
                return True
            for edge in self._children.get(current, []):
                if edge.child_id not in seen:
                    seen.add(edge.child_id)
                    stack.append(edge.child_id)
        return False

    def upstream_chain(self, node_id: str) -> list[str]:
        """Everything that must be running before ``node_id``, nearest first.

        Follows logical dependencies and the structural host. The reverse of
        the result is a valid start order: every node comes after all of its
        own dependencies. Diamonds appear once.
        """
        order: list[str] = []
        visited = {node_id}

        def visit(current: str) -> None:
            for edge in self._parents.get(current, []):
                if edge.parent_id in visited:
                    continue
                visited.add(edge.parent_id)
                visit(edge.parent_id)
                order.append(edge.parent_id)

        visit(node_id)
        order.reverse()
        return order

    def structural_descendants(self, node_id: str) -> list[str]:
        """Hosted subtree of ``node_id``, ancestor-first, excluding the node."""
        result: list[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self._children.get(current, []):
                if edge.is_structural and edge.child_id not in seen:
                    seen.add(edge.child_id)
                    result.append(edge.child_id)
                    queue.append(edge.child_id)
        return result

    def structural_children(self, node_id: str) -> list[str]:
        return [e.child_id for e in self._children.get(node_id, []) if e.is_structural]

    def upstream_dependencies(self, node_id: str) -> list[str]:
        """Direct logical dependencies only."""
        return [e.parent_id for e in self._parents.get(node_id, []) if not e.is_structural]

    def downstream_logical_dependents(self, node_id: str) -> list[str]:
        """All nodes whose logical dependency chain includes ``node_id``."""
        result: list[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self._children.get(current, []):
                if not edge.is_structural and edge.child_id not in seen:
                    seen.add(edge.child_id)
                    result.append(edge.child_id)
                    queue.append(edge.child_id)
        return result

    def is_shared_dependency(self, node_id: str) -> bool:
        dependents = {
            e.child_id for e in self._children.get(node_id, []) if not e.is_structural
        }
        return len(dependents) >= 2


async def _nodes_by_ids(db: AsyncSession, node_ids: list[str]) -> list[Node]:
    """Fetch nodes keeping the order of ``node_ids``."""
    if not node_ids:
        return []
    result = await db.execute(select(Node).where(Node.id.in_(node_ids)))
    by_id = {node.id: node for node in result.scalars().all()}
    return [by_id[node_id] for node_id in node_ids if node_id in by_id]


class DependencyGraphService:
    """Graph queries and link mutations against the record store."""

    @staticmethod
    async def validate_link(db: AsyncSession, parent_id: str, child_id: str) -> None:
        """Check a proposed ``parent -> child`` link.

        Raises:
            LinkValidationError: SELF_REFERENCE, NODE_NOT_FOUND,
                DUPLICATE_LINK or CYCLE_DETECTED
        """
        if parent_id == child_id:
            raise LinkValidationError(
                LinkValidationError.SELF_REFERENCE, "A node cannot depend on itself"
            )

        for node_id in (parent_id, child_id):
            if await db.get(Node, node_id) is None:
                raise LinkValidationError(
                    LinkValidationError.NODE_NOT_FOUND, f"Node {node_id} not found"
                )

        graph = await DependencyGraph.load(db)
        if graph.has_edge(parent_id, child_id):
            raise LinkValidationError(
                LinkValidationError.DUPLICATE_LINK, "This dependency already exists"
            )
        if graph.would_create_cycle(parent_id, child_id):
            raise LinkValidationError(
                LinkValidationError.CYCLE_DETECTED,
                "This dependency would create a cycle",
            )

    @staticmethod
    async def create_link(
        db: AsyncSession,
        parent_id: str,
        child_id: str,
        is_structural: bool = False,
    ) -> DependencyLink:
        await DependencyGraphService.validate_link(db, parent_id, child_id)
        link = DependencyLink(
            parent_id=parent_id, child_id=child_id, is_structural=is_structural
        )
        db.add(link)
        await db.flush()
        await db.refresh(link)
        logger.info(
            f"Created {'structural' if is_structural else 'logical'} link "
            f"{parent_id} -> {child_id}"
        )
        return link

    @staticmethod
    async def delete_link(db: AsyncSession, link_id: str) -> None:
        link = await db.get(DependencyLink, link_id)
        if link is None:
            raise LinkNotFoundError(link_id)
        if link.is_structural:
            raise StructuralLinkProtected(link_id)
        await db.delete(link)
        await db.flush()
        logger.info(f"Deleted link {link.parent_id} -> {link.child_id}")

    @staticmethod
    async def list_links(
        db: AsyncSession, node_id: str | None = None
    ) -> list[DependencyLink]:
        query = select(DependencyLink).order_by(DependencyLink.created_at)
        if node_id:
            query = query.where(
                (DependencyLink.parent_id == node_id)
                | (DependencyLink.child_id == node_id)
            )
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def get_upstream_chain(db: AsyncSession, node_id: str) -> list[Node]:
        graph = await DependencyGraph.load(db)
        return await _nodes_by_ids(db, graph.upstream_chain(node_id))

    @staticmethod
    async def get_structural_descendants(db: AsyncSession, node_id: str) -> list[Node]:
        graph = await DependencyGraph.load(db)
        return await _nodes_by_ids(db, graph.structural_descendants(node_id))

    @staticmethod
    async def get_upstream_dependencies(db: AsyncSession, node_id: str) -> list[Node]:
        graph = await DependencyGraph.load(db)
        return await _nodes_by_ids(db, graph.upstream_dependencies(node_id))

    @staticmethod
    async def get_downstream_logical_dependents(
        db: AsyncSession, node_id: str
    ) -> list[Node]:
        graph = await DependencyGraph.load(db)
        return await _nodes_by_ids(db, graph.downstream_logical_dependents(node_id))

    @staticmethod
    async def is_shared_dependency(db: AsyncSession, node_id: str) -> bool:
        graph = await DependencyGraph.load(db)
        return graph.is_shared_dependency(node_id)
