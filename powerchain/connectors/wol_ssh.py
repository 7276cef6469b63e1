"""Wake-on-LAN + SSH connector for bare-metal machines and hosts."""
import asyncio
import logging
import socket

import asyncssh

from powerchain.config import settings
from powerchain.connectors.base import ConnectionTestResult, Connector, ConnectorError
from powerchain.core.state_machine import NodeStatus
from powerchain.utils.network import build_magic_packet, probe_tcp_port

logger = logging.getLogger(__name__)

PLATFORM = "wol-ssh"
SSH_PORT = 22

# How long to wait for the shutdown command before assuming the host went down
SHUTDOWN_GRACE_SECONDS = 3.0


class WolSshConnector(Connector):
    """Starts a machine with a magic packet and stops it over SSH."""

    platform = PLATFORM

    def __init__(
        self,
        host: str,
        ssh_user: str,
        ssh_password: str | None = None,
        mac_address: str | None = None,
    ):
        self.host = host
        self.ssh_user = ssh_user
        self.ssh_password = ssh_password
        self.mac_address = mac_address

    async def _connect(self) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(
            self.host,
            port=SSH_PORT,
            username=self.ssh_user,
            password=self.ssh_password,
            known_hosts=None,
            connect_timeout=settings.connectors.ssh_connect_timeout_seconds,
        )

    async def test_connection(self) -> ConnectionTestResult:
        try:
            conn = await self._connect()
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            return ConnectionTestResult(False, f"SSH connection failed: {e}")
        conn.close()
        return ConnectionTestResult(True, f"SSH connection to {self.host} succeeded")

    async def start(self) -> None:
        """Send the magic packet. Power-on is confirmed later by polling."""
        if not self.mac_address:
            raise ConnectorError(
                "NO_START_CAPABILITY",
                f"Cannot start {self.host}: no MAC address configured",
                PLATFORM,
            )

        try:
            packet = build_magic_packet(self.mac_address)
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                sock.sendto(
                    packet,
                    (
                        settings.connectors.wol_broadcast_address,
                        settings.connectors.wol_port,
                    ),
                )
        except (ValueError, OSError) as e:
            raise ConnectorError(
                "WOL_SEND_FAILED",
                f"Failed to send magic packet: {e}",
                PLATFORM,
                {"mac_address": self.mac_address},
            ) from e

        logger.info(f"Magic packet sent to {self.mac_address}")

    async def stop(self) -> None:
        """Run the shutdown command over SSH."""
        try:
            conn = await self._connect()
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise ConnectorError(
                "SSH_CONNECTION_FAILED",
                f"SSH connection failed for shutdown: {e}",
                PLATFORM,
                {"host": self.host},
            ) from e

        command = settings.connectors.ssh_shutdown_command
        try:
            result = await asyncio.wait_for(
                conn.run(command, check=False), timeout=SHUTDOWN_GRACE_SECONDS
            )
        except (asyncio.TimeoutError, asyncssh.DisconnectError):
            # The session dies with the host
            logger.info(f"Shutdown issued to {self.host}, session closed")
            return
        except asyncssh.Error as e:
            raise ConnectorError(
                "SSH_COMMAND_FAILED",
                f"Shutdown command failed: {e}",
                PLATFORM,
                {"host": self.host},
            ) from e
        finally:
            conn.close()

        if result.exit_status not in (0, None):
            raise ConnectorError(
                "SSH_COMMAND_FAILED",
                f"Shutdown command exited {result.exit_status}: {result.stderr}",
                PLATFORM,
                {"host": self.host},
            )
        logger.info(f"Shutdown issued to {self.host}")

    async def get_status(self) -> NodeStatus:
        """Probe the SSH port; OS-level state is never inspected."""
        if not self.host:
            return NodeStatus.OFFLINE
        reachable = await probe_tcp_port(
            self.host, SSH_PORT, settings.monitor.ssh_timeout_seconds
        )
        return NodeStatus.ONLINE if reachable else NodeStatus.OFFLINE
