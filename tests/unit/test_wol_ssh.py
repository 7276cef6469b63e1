"""Tests for the Wake-on-LAN + SSH connector."""
import asyncssh
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from powerchain.connectors.base import ConnectorError
from powerchain.connectors.wol_ssh import WolSshConnector
from powerchain.core.state_machine import NodeStatus
from powerchain.utils.network import build_magic_packet


def ssh_connection(exit_status=0, run_error=None):
    conn = MagicMock()
    if run_error is not None:
        conn.run = AsyncMock(side_effect=run_error)
    else:
        conn.run = AsyncMock(return_value=MagicMock(exit_status=exit_status, stderr="denied"))
    return conn


class TestWolStart:
    """Test magic packet sending."""

    @pytest.mark.asyncio
    async def test_start_broadcasts_magic_packet(self):
        connector = WolSshConnector("192.168.1.20", "root", mac_address="AA:BB:CC:DD:EE:FF")

        with patch("powerchain.connectors.wol_ssh.socket.socket") as mock_socket:
            sock = mock_socket.return_value.__enter__.return_value
            await connector.start()

        sock.sendto.assert_called_once_with(
            build_magic_packet("AA:BB:CC:DD:EE:FF"), ("255.255.255.255", 9)
        )

    @pytest.mark.asyncio
    async def test_start_without_mac(self):
        connector = WolSshConnector("192.168.1.20", "root")

        with pytest.raises(ConnectorError) as exc:
            await connector.start()
        assert exc.value.code == "NO_START_CAPABILITY"

    @pytest.mark.asyncio
    async def test_socket_failure(self):
        connector = WolSshConnector("192.168.1.20", "root", mac_address="AA:BB:CC:DD:EE:FF")

        with patch(
            "powerchain.connectors.wol_ssh.socket.socket",
            side_effect=OSError("network unreachable"),
        ):
            with pytest.raises(ConnectorError) as exc:
                await connector.start()
        assert exc.value.code == "WOL_SEND_FAILED"


class TestSshStop:
    """Test shutdown over SSH."""

    @pytest.mark.asyncio
    async def test_stop_runs_shutdown_command(self):
        conn = ssh_connection()
        connector = WolSshConnector("192.168.1.20", "admin", ssh_password="pw")

        with patch(
            "powerchain.connectors.wol_ssh.asyncssh.connect",
            new=AsyncMock(return_value=conn),
        ) as connect:
            await connector.stop()

        assert connect.call_args.args == ("192.168.1.20",)
        assert connect.call_args.kwargs["username"] == "admin"
        assert connect.call_args.kwargs["password"] == "pw"
        conn.run.assert_awaited_once_with("sudo shutdown -h now", check=False)
        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_dropped_session_counts_as_success(self):
        conn = ssh_connection(run_error=asyncssh.DisconnectError(11, "host going down"))
        connector = WolSshConnector("192.168.1.20", "admin")

        with patch(
            "powerchain.connectors.wol_ssh.asyncssh.connect",
            new=AsyncMock(return_value=conn),
        ):
            await connector.stop()

        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        connector = WolSshConnector("192.168.1.20", "admin")

        with patch(
            "powerchain.connectors.wol_ssh.asyncssh.connect",
            new=AsyncMock(side_effect=OSError("no route to host")),
        ):
            with pytest.raises(ConnectorError) as exc:
                await connector.stop()
        assert exc.value.code == "SSH_CONNECTION_FAILED"

    @pytest.mark.asyncio
    async def test_failing_command(self):
        conn = ssh_connection(exit_status=1)
        connector = WolSshConnector("192.168.1.20", "admin")

        with patch(
            "powerchain.connectors.wol_ssh.asyncssh.connect",
            new=AsyncMock(return_value=conn),
        ):
            with pytest.raises(ConnectorError) as exc:
                await connector.stop()
        assert exc.value.code == "SSH_COMMAND_FAILED"


class TestStatus:
    """Test reachability probing."""

    @pytest.mark.asyncio
    async def test_reachable_ssh_port_is_online(self):
        connector = WolSshConnector("192.168.1.20", "root")

        with patch(
            "powerchain.connectors.wol_ssh.probe_tcp_port",
            new=AsyncMock(return_value=True),
        ) as probe:
            assert await connector.get_status() == NodeStatus.ONLINE
        probe.assert_awaited_once_with("192.168.1.20", 22, 5.0)

    @pytest.mark.asyncio
    async def test_unreachable_is_offline(self):
        connector = WolSshConnector("192.168.1.20", "root")

        with patch(
            "powerchain.connectors.wol_ssh.probe_tcp_port",
            new=AsyncMock(return_value=False),
        ):
            assert await connector.get_status() == NodeStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_no_address_is_offline(self):
        connector = WolSshConnector("", "root", mac_address="AA:BB:CC:DD:EE:FF")

        assert await connector.get_status() == NodeStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_connection_test(self):
        conn = ssh_connection()
        connector = WolSshConnector("192.168.1.20", "root")

        with patch(
            "powerchain.connectors.wol_ssh.asyncssh.connect",
            new=AsyncMock(return_value=conn),
        ):
            result = await connector.test_connection()

        assert result.success is True
        conn.close.assert_called_once()
