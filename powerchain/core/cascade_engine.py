"""Cascade engine: start or stop a node together with its dependency chain.

A cascade is created synchronously (validate, insert, return) and executed
in the background. Progress is only observable through the persisted
Cascade row, the operation log and broadcast events; errors raised while
executing are captured into the cascade's failure fields and never
propagate to the caller that launched it.

Start plan: upstream chain farthest-first, then the target.

Stop plan, in three phases:
    1. force-stop structural descendants leaf-first (best-effort)
    2. stop the target (a confirmation timeout counts as success)
    3. stop upstream logical dependencies nobody else still needs
"""
import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from powerchain.config import settings
from powerchain.connectors.base import Connector, ConnectorError
from powerchain.connectors.factory import resolve_connector
from powerchain.core.dependency_graph import (
    DependencyGraph,
    DependencyGraphService,
    NodeNotFoundError,
)
from powerchain.core.operation_log import OperationLogService
from powerchain.core.state_machine import (
    CascadeStateMachine,
    NodeStatus,
    StepStatus,
    is_active,
    is_inactive,
)
from powerchain.core.websocket import EventBroadcaster, event_broadcaster
from powerchain.db.database import async_session_factory
from powerchain.db.models import Cascade, Node
from powerchain.utils.async_tasks import safe_create_task

logger = logging.getLogger(__name__)

SOURCE = "cascade"

TIMEOUT = "TIMEOUT"
HOST_UNREACHABLE = "HOST_UNREACHABLE"
NODE_NOT_FOUND = "NODE_NOT_FOUND"
CONNECTOR_ERROR = "CONNECTOR_ERROR"
ORCHESTRATOR_RESTARTED = "ORCHESTRATOR_RESTARTED"

Resolver = Callable[[AsyncSession, str], Awaitable[Connector | None]]


class CascadeAlreadyRunning(Exception):
    """A pending or in-progress cascade already targets the node."""

    def __init__(self, node_id: str, cascade_id: str):
        self.node_id = node_id
        self.cascade_id = cascade_id
        super().__init__(f"Cascade {cascade_id} is already running for node {node_id}")


class CascadeStepError(Exception):
    """Fatal outcome of one cascade step."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_active_cascade(db: AsyncSession, node_id: str) -> Cascade | None:
    """Return the pending/in-progress cascade targeting ``node_id``, if any."""
    result = await db.execute(
        select(Cascade)
        .where(Cascade.node_id == node_id)
        .where(Cascade.status.in_(CascadeStateMachine.ACTIVE_STATES))
        .order_by(Cascade.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class CascadeEngine:
    """Plans and executes start/stop cascades."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        broadcaster: EventBroadcaster = event_broadcaster,
        resolver: Resolver = resolve_connector,
        step_timeout: float | None = None,
        poll_interval: float | None = None,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.resolver = resolver
        self.step_timeout = (
            step_timeout if step_timeout is not None
            else settings.cascade.step_timeout_seconds
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else settings.cascade.poll_interval_seconds
        )
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Creation and launch
    # ------------------------------------------------------------------

    async def create_cascade(
        self, db: AsyncSession, node_id: str, cascade_type: str
    ) -> Cascade:
        """Insert a pending cascade after the single-active-cascade pre-check.

        Raises:
            NodeNotFoundError: Unknown target node
            CascadeAlreadyRunning: Another cascade is pending/in progress
        """
        if cascade_type not in ("start", "stop"):
            raise ValueError(f"Unknown cascade type: {cascade_type}")

        node = await db.get(Node, node_id)
        if node is None:
            raise NodeNotFoundError(node_id)

        active = await get_active_cascade(db, node_id)
        if active is not None:
            raise CascadeAlreadyRunning(node_id, active.id)

        cascade = Cascade(node_id=node_id, type=cascade_type, status="pending")
        db.add(cascade)
        await db.flush()
        await db.refresh(cascade)
        logger.info(f"Created {cascade_type} cascade {cascade.id} for {node.name}")
        return cascade

    def launch(self, cascade: Cascade) -> asyncio.Task:
        """Run ``cascade`` in the background. Callers never await the result."""
        if cascade.type == "start":
            coro = self.execute_start(cascade.id)
        else:
            coro = self.execute_stop(cascade.id)
        return self._spawn(coro, name=f"cascade-{cascade.id}")

    async def wait_idle(self) -> None:
        """Wait for every launched cascade and child re-poll to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = safe_create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def reconcile_orphaned_cascades(self) -> int:
        """Fail cascades left pending/in progress by a previous process."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Cascade).where(
                    Cascade.status.in_(CascadeStateMachine.ACTIVE_STATES)
                )
            )
            orphans = result.scalars().all()
            for cascade in orphans:
                cascade.status = CascadeStateMachine.transition(cascade.status, "failed")
                cascade.failed_step = cascade.current_step or None
                cascade.error_code = ORCHESTRATOR_RESTARTED
                cascade.error_message = "Orchestrator restarted while the cascade was running"
                cascade.completed_at = _now()
                await OperationLogService.log(
                    db,
                    "warn",
                    SOURCE,
                    f"Cascade {cascade.id} marked failed after restart",
                    reason="Orphaned cascade",
                    node_id=cascade.node_id,
                    cascade_id=cascade.id,
                    error_code=ORCHESTRATOR_RESTARTED,
                )
            await db.commit()

        if orphans:
            logger.warning(f"Reconciled {len(orphans)} orphaned cascades")
        return len(orphans)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def execute_start(self, cascade_id: str) -> None:
        async with self.session_factory() as db:
            cascade = await db.get(Cascade, cascade_id)
            if cascade is None:
                logger.error(f"Cascade {cascade_id} disappeared before execution")
                return

            node = await db.get(Node, cascade.node_id)
            if node is None:
                await self._fail(db, cascade, NODE_NOT_FOUND, "Target node not found")
                return

            chain = await DependencyGraphService.get_upstream_chain(db, node.id)
            plan = list(reversed(chain)) + [node]
            planned = frozenset(n.id for n in plan)

            cascade.status = CascadeStateMachine.transition(cascade.status, "in_progress")
            cascade.total_steps = len(plan)
            cascade.current_step = 0
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Start cascade for {node.name}: {len(plan)} steps",
                details={"plan": [n.name for n in plan]},
                node_id=node.id,
                cascade_id=cascade.id,
            )
            await db.commit()

            try:
                for step, step_node in enumerate(plan, start=1):
                    cascade.current_step = step
                    await db.commit()
                    await self._start_node(db, cascade, step_node, step, planned)
            except CascadeStepError as e:
                await self._fail(db, cascade, e.code, e.message)
                return
            except Exception as e:
                logger.exception(f"Unexpected error in cascade {cascade.id}")
                await self._fail(db, cascade, CONNECTOR_ERROR, str(e))
                return

            await self._complete(db, cascade, node)

    async def _start_node(
        self, db: AsyncSession, cascade: Cascade, node: Node, step: int,
        planned: frozenset[str] = frozenset(),
    ) -> None:
        await self._progress(cascade, node, step, StepStatus.PENDING)
        connector = await self._resolve(db, node)

        if connector is None:
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Step {step}: {node.name} skipped",
                reason="No connector configured",
                node_id=node.id,
                cascade_id=cascade.id,
            )
            await db.commit()
            await self._progress(cascade, node, step, StepStatus.SKIPPED)
            return

        try:
            status = await connector.get_status()
            if is_active(status):
                await self._set_status(db, node, status)
                await self._progress(cascade, node, step, StepStatus.DONE)
                return

            await self._progress(cascade, node, step, StepStatus.STARTING)
            try:
                await connector.start()
            except ConnectorError as e:
                if e.code != "NO_START_CAPABILITY":
                    raise
                status = await connector.get_status()
                if is_active(status):
                    await self._set_status(db, node, status)
                    await self._progress(cascade, node, step, StepStatus.DONE)
                    return
                await self._progress(cascade, node, step, StepStatus.FAILED)
                raise CascadeStepError(
                    HOST_UNREACHABLE,
                    f"{node.name} is unreachable and has no way to be started",
                ) from e

            status = await self._poll_until(connector, is_active)
            if status is None:
                await self._progress(cascade, node, step, StepStatus.FAILED)
                raise CascadeStepError(
                    TIMEOUT,
                    f"{node.name} did not come up within {self.step_timeout:g}s",
                )

            await self._set_status(db, node, status)
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Step {step}: {node.name} started",
                node_id=node.id,
                cascade_id=cascade.id,
            )
            await db.commit()
            self._spawn(
                self._refresh_structural_children(node.id, planned),
                name=f"refresh-children-{node.id}",
            )
            await self._progress(cascade, node, step, StepStatus.DONE)
        except ConnectorError as e:
            await self._set_status(db, node, NodeStatus.ERROR)
            await self._progress(cascade, node, step, StepStatus.FAILED)
            raise CascadeStepError(e.code, e.message) from e
        finally:
            await connector.aclose()

    async def _refresh_structural_children(
        self, node_id: str, skip: frozenset[str] = frozenset()
    ) -> None:
        """Best-effort: re-read the status of everything hosted on a fresh host.

        Nodes in ``skip`` are handled by their own cascade step.
        """
        async with self.session_factory() as db:
            graph = await DependencyGraph.load(db)
            for child_id in graph.structural_children(node_id):
                if child_id in skip:
                    continue
                child = await db.get(Node, child_id)
                if child is None:
                    continue
                try:
                    connector = await self.resolver(db, child_id)
                    if connector is None:
                        continue
                    try:
                        status = await connector.get_status()
                    finally:
                        await connector.aclose()
                except Exception as e:
                    logger.debug(f"Status refresh of {child.name} failed: {e}")
                    continue
                await self._set_status(db, child, status)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def execute_stop(self, cascade_id: str) -> None:
        async with self.session_factory() as db:
            cascade = await db.get(Cascade, cascade_id)
            if cascade is None:
                logger.error(f"Cascade {cascade_id} disappeared before execution")
                return

            node = await db.get(Node, cascade.node_id)
            if node is None:
                await self._fail(db, cascade, NODE_NOT_FOUND, "Target node not found")
                return

            descendants = await DependencyGraphService.get_structural_descendants(
                db, node.id
            )
            descendants.reverse()  # leaves first
            dependencies = await DependencyGraphService.get_upstream_dependencies(
                db, node.id
            )

            stopping = {node.id} | {d.id for d in descendants}
            queued = {d.id for d in dependencies}
            worklist = deque(d.id for d in dependencies)

            cascade.status = CascadeStateMachine.transition(cascade.status, "in_progress")
            cascade.total_steps = len(descendants) + 1 + len(worklist)
            cascade.current_step = 0
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Stop cascade for {node.name}: {len(descendants)} hosted, "
                f"{len(worklist)} upstream dependencies",
                node_id=node.id,
                cascade_id=cascade.id,
            )
            await db.commit()

            step = 0
            try:
                # Phase 1: hosted nodes go down with their host
                for descendant in descendants:
                    step += 1
                    cascade.current_step = step
                    await db.commit()
                    await self._force_stop(db, cascade, descendant, step)

                # Phase 2: the target
                step += 1
                cascade.current_step = step
                await db.commit()
                await self._stop_node(db, cascade, node, step)

                # Phase 3: dependencies nobody else needs any more
                while worklist:
                    dep_id = worklist.popleft()
                    step += 1
                    cascade.current_step = step
                    await db.commit()
                    released = await self._cleanup_dependency(
                        db, cascade, dep_id, step, stopping
                    )
                    if not released:
                        continue
                    graph = await DependencyGraph.load(db)
                    new_deps = [
                        d for d in graph.upstream_dependencies(dep_id)
                        if d not in stopping and d not in queued
                    ]
                    if new_deps:
                        queued.update(new_deps)
                        worklist.extend(new_deps)
                        cascade.total_steps += len(new_deps)
                        await db.commit()
            except CascadeStepError as e:
                await self._fail(db, cascade, e.code, e.message)
                return
            except Exception as e:
                logger.exception(f"Unexpected error in cascade {cascade.id}")
                await self._fail(db, cascade, CONNECTOR_ERROR, str(e))
                return

            await self._complete(db, cascade, node)

    async def _force_stop(
        self, db: AsyncSession, cascade: Cascade, node: Node, step: int
    ) -> None:
        """Stop a hosted node; any failure degrades to marking it offline."""
        await self._progress(cascade, node, step, StepStatus.PENDING)
        if is_inactive(node.status):
            await self._progress(cascade, node, step, StepStatus.SKIPPED)
            return

        try:
            connector = await self.resolver(db, node.id)
        except ConnectorError as e:
            await self._force_offline(db, cascade, node, step, e.message)
            return

        if connector is None:
            await self._force_offline(db, cascade, node, step, "No connector configured")
            return

        try:
            await self._progress(cascade, node, step, StepStatus.STOPPING)
            await connector.stop()
            status = await self._poll_until(connector, is_inactive)
            await self._set_status(db, node, status or NodeStatus.OFFLINE)
            await self._progress(cascade, node, step, StepStatus.DONE)
        except ConnectorError as e:
            await self._force_offline(db, cascade, node, step, e.message)
        finally:
            await connector.aclose()

    async def _force_offline(
        self, db: AsyncSession, cascade: Cascade, node: Node, step: int, reason: str
    ) -> None:
        await OperationLogService.log(
            db,
            "warn",
            SOURCE,
            f"Step {step}: {node.name} marked offline with its host",
            reason=reason,
            node_id=node.id,
            cascade_id=cascade.id,
        )
        await self._set_status(db, node, NodeStatus.OFFLINE)
        await self._progress(cascade, node, step, StepStatus.DONE)

    async def _stop_node(
        self, db: AsyncSession, cascade: Cascade, node: Node, step: int
    ) -> None:
        """Stop one node; a confirmation timeout counts as success."""
        await self._progress(cascade, node, step, StepStatus.PENDING)
        connector = await self._resolve(db, node)

        if connector is None:
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Step {step}: {node.name} skipped",
                reason="No connector configured",
                node_id=node.id,
                cascade_id=cascade.id,
            )
            await db.commit()
            await self._progress(cascade, node, step, StepStatus.SKIPPED)
            return

        try:
            status = await connector.get_status()
            if is_inactive(status):
                await self._set_status(db, node, status)
                await self._progress(cascade, node, step, StepStatus.DONE)
                return

            await self._progress(cascade, node, step, StepStatus.STOPPING)
            try:
                await connector.stop()
            except ConnectorError as e:
                if e.code != "NO_STOP_CAPABILITY":
                    raise
                await self._progress(cascade, node, step, StepStatus.FAILED)
                raise CascadeStepError(e.code, e.message) from e

            status = await self._poll_until(connector, is_inactive)
            if status is None:
                await OperationLogService.log(
                    db,
                    "info",
                    SOURCE,
                    f"Step {step}: {node.name} stopped responding, assuming offline",
                    reason="Stop confirmation timeout",
                    node_id=node.id,
                    cascade_id=cascade.id,
                )
                status = NodeStatus.OFFLINE
            else:
                await OperationLogService.log(
                    db,
                    "info",
                    SOURCE,
                    f"Step {step}: {node.name} stopped",
                    node_id=node.id,
                    cascade_id=cascade.id,
                )
            await self._set_status(db, node, status)
            await self._progress(cascade, node, step, StepStatus.DONE)
        except ConnectorError as e:
            await self._set_status(db, node, NodeStatus.ERROR)
            await self._progress(cascade, node, step, StepStatus.FAILED)
            raise CascadeStepError(e.code, e.message) from e
        finally:
            await connector.aclose()

    async def _cleanup_dependency(
        self,
        db: AsyncSession,
        cascade: Cascade,
        dep_id: str,
        step: int,
        stopping: set[str],
    ) -> bool:
        """Stop an upstream dependency unless something else still needs it.

        Returns True when the dependency is down after this step, either
        stopped here or already inactive, so its own dependencies are examined
        next.
        """
        dep = await self._fresh_node(db, dep_id)
        if dep is None:
            return False

        await self._progress(cascade, dep, step, StepStatus.PENDING)
        if is_inactive(dep.status):
            stopping.add(dep.id)
            await self._progress(cascade, dep, step, StepStatus.SKIPPED)
            return True

        graph = await DependencyGraph.load(db)
        candidates = [
            n for n in graph.downstream_logical_dependents(dep.id)
            + graph.structural_descendants(dep.id)
            if n not in stopping
        ]
        still_active = [
            n for n in await self._fresh_nodes(db, candidates) if is_active(n.status)
        ]

        if still_active:
            names = ", ".join(n.name for n in still_active)
            await OperationLogService.log(
                db,
                "warn",
                SOURCE,
                f"Step {step}: {dep.name} skipped, shared dependency",
                reason=f"Still needed by: {names}",
                details={"active_dependents": [n.id for n in still_active]},
                node_id=dep.id,
                cascade_id=cascade.id,
            )
            await db.commit()
            await self._progress(cascade, dep, step, StepStatus.SKIPPED)
            return False

        if dep.confirm_before_shutdown:
            await OperationLogService.log(
                db,
                "warn",
                SOURCE,
                f"Step {step}: shutdown of {dep.name} proposed",
                reason="Confirmation required before shutdown",
                node_id=dep.id,
                cascade_id=cascade.id,
            )
            await db.commit()
            await self._progress(cascade, dep, step, StepStatus.SKIPPED)
            return False

        await self._stop_node(db, cascade, dep, step)
        stopping.add(dep.id)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve(self, db: AsyncSession, node: Node) -> Connector | None:
        try:
            return await self.resolver(db, node.id)
        except ConnectorError as e:
            raise CascadeStepError(e.code, e.message) from e

    async def _poll_until(
        self, connector: Connector, predicate: Callable[[str], bool]
    ) -> NodeStatus | None:
        """Poll until ``predicate(status)`` holds; None once the step times out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.step_timeout
        while True:
            await asyncio.sleep(self.poll_interval)
            status = await connector.get_status()
            if predicate(status):
                return status
            if loop.time() >= deadline:
                return None

    async def _fresh_node(self, db: AsyncSession, node_id: str) -> Node | None:
        nodes = await self._fresh_nodes(db, [node_id])
        return nodes[0] if nodes else None

    async def _fresh_nodes(self, db: AsyncSession, node_ids: list[str]) -> list[Node]:
        """Reload nodes, picking up status changes made by other cascades."""
        if not node_ids:
            return []
        result = await db.execute(
            select(Node)
            .where(Node.id.in_(node_ids))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _set_status(self, db: AsyncSession, node: Node, status: str) -> None:
        value = NodeStatus(status).value
        node.status = value
        await db.commit()
        await self.broadcaster.broadcast(
            "status-change",
            {"nodeId": node.id, "status": value, "timestamp": _now().isoformat()},
        )

    async def _progress(
        self, cascade: Cascade, node: Node, step: int, sub_status: StepStatus
    ) -> None:
        await self.broadcaster.broadcast(
            "cascade-progress",
            {
                "cascadeId": cascade.id,
                "nodeId": cascade.node_id,
                "step": step,
                "totalSteps": cascade.total_steps,
                "currentDependency": {
                    "id": node.id,
                    "name": node.name,
                    "status": sub_status.value,
                },
            },
        )

    async def _complete(self, db: AsyncSession, cascade: Cascade, node: Node) -> None:
        cascade.status = CascadeStateMachine.transition(cascade.status, "completed")
        cascade.completed_at = _now()
        await OperationLogService.log(
            db,
            "info",
            SOURCE,
            f"{cascade.type.capitalize()} cascade for {node.name} completed",
            node_id=node.id,
            cascade_id=cascade.id,
        )
        await db.commit()
        await self.broadcaster.broadcast(
            "cascade-complete",
            {"cascadeId": cascade.id, "nodeId": cascade.node_id, "success": True},
        )

    async def _fail(
        self, db: AsyncSession, cascade: Cascade, code: str, message: str
    ) -> None:
        """Record a fatal step failure; completed steps stay as they are."""
        cascade.status = CascadeStateMachine.transition(cascade.status, "failed")
        cascade.failed_step = cascade.current_step or None
        cascade.error_code = code
        cascade.error_message = message
        cascade.completed_at = _now()
        await OperationLogService.log(
            db,
            "error",
            SOURCE,
            f"Cascade {cascade.id} failed at step {cascade.current_step}: {message}",
            reason=code,
            node_id=cascade.node_id,
            cascade_id=cascade.id,
            error_code=code,
        )
        await db.commit()
        await self.broadcaster.broadcast(
            "cascade-error",
            {
                "cascadeId": cascade.id,
                "nodeId": cascade.node_id,
                "failedStep": cascade.failed_step,
                "error": {"code": code, "message": message},
            },
        )


# Global instance
cascade_engine = CascadeEngine()
