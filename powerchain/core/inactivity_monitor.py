"""Inactivity monitor: shut down nodes that have been idle long enough.

Every tick evaluates each enabled rule whose node is active and configured.
A node counts as active when ANY enabled criterion reports activity; any
check that cannot produce a reliable answer reports activity, so ambiguous
data never triggers a shutdown. One inactive tick adds one minute to the
node's counter.
"""
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

import asyncssh
from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from powerchain.config import settings
from powerchain.connectors.base import ConnectorError, NodeStats
from powerchain.connectors.factory import resolve_connector
from powerchain.connectors.ssh import run_ssh_command
from powerchain.core.cascade_engine import (
    CascadeAlreadyRunning,
    CascadeEngine,
    Resolver,
    cascade_engine,
)
from powerchain.core.dependency_graph import DependencyGraphService
from powerchain.core.operation_log import OperationLogService
from powerchain.core.scheduler import JobScheduler, job_scheduler
from powerchain.core.state_machine import ACTIVE_STATUSES, GUEST_KINDS, NodeKind, is_active
from powerchain.core.websocket import EventBroadcaster, event_broadcaster
from powerchain.db.database import async_session_factory
from powerchain.db.models import InactivityRule, Node
from powerchain.utils.crypto import decrypt_value
from powerchain.utils.network import probe_tcp_port

logger = logging.getLogger(__name__)

SOURCE = "inactivity-monitor"
JOB_ID = "inactivity-monitor"
SSH_PORT = 22

CONNECTIONS_COMMAND = "ss -tun state established"
LOAD_COMMAND = "cat /proc/loadavg && free -m"

LOOPBACK_PREFIXES = ("127.", "[::1]", "::1", "[::ffff:127.")


def parse_established_connections(output: str) -> int:
    """Count established connections that are neither SSH nor loopback.

    ``ss -tun state established`` prints a header, then one line per socket:
    ``Netid Recv-Q Send-Q Local:Port Peer:Port``.

    Raises:
        ValueError: If a socket line has too few columns
    """
    lines = [line for line in output.splitlines() if line.strip()]
    count = 0
    for line in lines[1:]:
        parts = line.split()
        if len(parts) < 5:
            raise ValueError(f"Unexpected ss output line: {line!r}")
        local, peer = parts[3], parts[4]
        if local.endswith(f":{SSH_PORT}"):
            continue
        if peer.startswith(LOOPBACK_PREFIXES):
            continue
        count += 1
    return count


def parse_load_and_memory(output: str) -> tuple[float, float]:
    """Extract the 1-minute load average and the used RAM fraction.

    Raises:
        ValueError: If either value cannot be read
    """
    lines = output.splitlines()
    if not lines or not lines[0].split():
        raise ValueError("Empty load average output")
    load = float(lines[0].split()[0])

    mem_line = next((line for line in lines if line.startswith("Mem:")), None)
    if mem_line is None:
        raise ValueError("No 'Mem:' line in free output")
    parts = mem_line.split()
    if len(parts) < 3:
        raise ValueError(f"Unexpected free output line: {mem_line!r}")
    total, used = float(parts[1]), float(parts[2])
    return load, used / total if total > 0 else 0.0


def _stats_exceed(stats: NodeStats, cpu_threshold: float, ram_threshold: float) -> bool:
    return stats.cpu_usage > cpu_threshold or stats.ram_usage > ram_threshold


class InactivityMonitor:
    """Owns the inactivity counters and the recurring evaluation job."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        engine: CascadeEngine = cascade_engine,
        broadcaster: EventBroadcaster = event_broadcaster,
        scheduler: JobScheduler = job_scheduler,
        resolver: Resolver = resolve_connector,
        port_probe: Callable[[str, int, float], Awaitable[bool]] = probe_tcp_port,
        ssh_runner: Callable[..., Awaitable[str]] = run_ssh_command,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.broadcaster = broadcaster
        self.scheduler = scheduler
        self.resolver = resolver
        self.port_probe = port_probe
        self.ssh_runner = ssh_runner
        self.counters: dict[str, int] = {}

    def start(self, interval_seconds: float | None = None) -> None:
        self.scheduler.schedule_interval(
            JOB_ID,
            self.tick,
            interval_seconds or settings.monitor.interval_seconds,
        )

    def stop(self) -> None:
        self.scheduler.remove_job(JOB_ID)
        self.counters.clear()

    async def tick(self) -> None:
        """Evaluate every eligible rule once."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(InactivityRule, Node)
                .join(Node, InactivityRule.node_id == Node.id)
                .where(InactivityRule.is_enabled.is_(True))
                .where(Node.status.in_(sorted(ACTIVE_STATUSES)))
                .where(Node.configured.is_(True))
            )
            rows = result.all()

            eligible = {node.id for _, node in rows}
            for node_id in list(self.counters):
                if node_id not in eligible:
                    del self.counters[node_id]

            for rule, node in rows:
                try:
                    await self._evaluate(db, rule, node)
                except Exception as e:
                    logger.exception(f"Inactivity check for {node.name} failed")
                    await OperationLogService.log(
                        db,
                        "error",
                        SOURCE,
                        f"Inactivity check for {node.name} failed: {e}",
                        reason=type(e).__name__,
                        node_id=node.id,
                    )
                await db.commit()

    async def _evaluate(self, db: AsyncSession, rule: InactivityRule, node: Node) -> None:
        if await self.check_activity(db, rule, node):
            previous = self.counters.get(node.id, 0)
            self.counters[node.id] = 0
            if previous > 0:
                await OperationLogService.log(
                    db,
                    "info",
                    SOURCE,
                    f"Activity on {node.name}, counter reset (was {previous} min)",
                    reason="Activity detected",
                    details={"previous_inactive_minutes": previous},
                    node_id=node.id,
                )
            return

        counter = self.counters.get(node.id, 0) + 1
        self.counters[node.id] = counter
        logger.debug(f"{node.name} inactive for {counter}/{rule.timeout_minutes} min")
        if counter < rule.timeout_minutes:
            return

        dependents = await DependencyGraphService.get_downstream_logical_dependents(
            db, node.id
        )
        active_dependents = [d for d in dependents if is_active(d.status)]
        if active_dependents:
            names = ", ".join(d.name for d in active_dependents)
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Auto-shutdown of {node.name} cancelled, active dependents: {names}",
                reason="Active dependent detected",
                details={"rule_id": rule.id, "active_dependents": names},
                node_id=node.id,
            )
            self.counters[node.id] = 0
            return

        await self._trigger_shutdown(db, rule, node, counter)

    async def _trigger_shutdown(
        self, db: AsyncSession, rule: InactivityRule, node: Node, inactive_minutes: int
    ) -> None:
        try:
            cascade = await self.engine.create_cascade(db, node.id, "stop")
        except CascadeAlreadyRunning as e:
            # Counter kept so the node is re-evaluated right after that cascade
            await OperationLogService.log(
                db,
                "info",
                SOURCE,
                f"Auto-shutdown of {node.name} skipped, cascade already running",
                reason="Cascade already active",
                details={"rule_id": rule.id, "existing_cascade_id": e.cascade_id},
                node_id=node.id,
            )
            return

        await OperationLogService.log(
            db,
            "info",
            SOURCE,
            f"Auto-shutdown of {node.name} after {inactive_minutes} min of inactivity",
            reason=f"Inactivity timeout reached ({rule.timeout_minutes} min)",
            details={"rule_id": rule.id, "inactive_minutes": inactive_minutes},
            node_id=node.id,
            cascade_id=cascade.id,
        )
        await db.commit()

        self.engine.launch(cascade)
        del self.counters[node.id]

        await self.broadcaster.broadcast(
            "auto-shutdown",
            {
                "nodeId": node.id,
                "nodeName": node.name,
                "ruleId": rule.id,
                "reason": "inactivity",
                "inactiveMinutes": inactive_minutes,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Activity checks
    # ------------------------------------------------------------------

    async def check_activity(
        self, db: AsyncSession, rule: InactivityRule, node: Node
    ) -> bool:
        criteria = rule.monitoring_criteria or {}
        cpu_threshold = criteria.get("cpu_threshold", settings.monitor.default_cpu_threshold)
        ram_threshold = criteria.get("ram_threshold", settings.monitor.default_ram_threshold)
        stats = await self._platform_stats(db, node)

        checks: list[Callable[[], Awaitable[bool]]] = []

        if criteria.get("last_access"):
            if node.kind != NodeKind.CONTAINER.value:
                checks.append(lambda: self._check_last_access(node))
            elif stats is not None:
                checks.append(lambda: self._const(_stats_exceed(stats, cpu_threshold, ram_threshold)))

        if criteria.get("network_connections") and self._has_ssh(node):
            checks.append(lambda: self._check_network_connections(node))

        if criteria.get("cpu_ram_activity"):
            if stats is not None:
                checks.append(lambda: self._const(_stats_exceed(stats, cpu_threshold, ram_threshold)))
            else:
                checks.append(
                    lambda: self._check_load_and_memory(node, cpu_threshold, ram_threshold)
                )

        if not checks:
            return True

        for check in checks:
            if await check():
                return True
        return False

    @staticmethod
    async def _const(value: bool) -> bool:
        return value

    @staticmethod
    def _has_ssh(node: Node) -> bool:
        return bool(node.ip_address and node.ssh_user) and node.kind != NodeKind.CONTAINER.value

    async def _platform_stats(self, db: AsyncSession, node: Node) -> NodeStats | None:
        """CPU/RAM from the hosting platform's API, when the node is a guest."""
        if node.kind not in GUEST_KINDS or not node.parent_id:
            return None
        try:
            connector = await self.resolver(db, node.id)
        except ConnectorError as e:
            logger.debug(f"No platform stats for {node.name}: {e.message}")
            return None
        if connector is None:
            return None
        try:
            return await connector.get_stats()
        except ConnectorError as e:
            logger.debug(f"No platform stats for {node.name}: {e.message}")
            return None
        finally:
            await connector.aclose()

    async def _check_last_access(self, node: Node) -> bool:
        if not (node.ip_address and node.ssh_user):
            return True
        return await self.port_probe(
            node.ip_address, SSH_PORT, settings.monitor.ssh_timeout_seconds
        )

    async def _run_ssh(self, node: Node, command: str) -> str:
        password = None
        if node.ssh_credentials_encrypted:
            password = decrypt_value(node.ssh_credentials_encrypted)
        return await self.ssh_runner(
            node.ip_address,
            node.ssh_user,
            password,
            command,
            settings.monitor.ssh_timeout_seconds,
        )

    async def _check_network_connections(self, node: Node) -> bool:
        try:
            output = await self._run_ssh(node, CONNECTIONS_COMMAND)
            return parse_established_connections(output) > 0
        except (asyncssh.Error, OSError, InvalidToken, ValueError) as e:
            logger.debug(f"Connection check on {node.name} inconclusive: {e}")
            return True

    async def _check_load_and_memory(
        self, node: Node, cpu_threshold: float, ram_threshold: float
    ) -> bool:
        if not (node.ip_address and node.ssh_user):
            return True
        try:
            output = await self._run_ssh(node, LOAD_COMMAND)
            load, ram_usage = parse_load_and_memory(output)
        except (asyncssh.Error, OSError, InvalidToken, ValueError) as e:
            logger.debug(f"Load check on {node.name} inconclusive: {e}")
            return True
        return load > cpu_threshold or ram_usage > ram_threshold


# Global instance
inactivity_monitor = InactivityMonitor()
