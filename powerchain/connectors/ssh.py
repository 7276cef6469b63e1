"""Short-lived SSH command sessions."""
import logging

import asyncssh

logger = logging.getLogger(__name__)


async def run_ssh_command(
    host: str,
    username: str,
    password: str | None,
    command: str,
    connect_timeout: float,
    port: int = 22,
) -> str:
    """Open an SSH session, run one command and return its stdout.

    Raises:
        asyncssh.Error: On authentication or protocol failures
        OSError: On network failures
    """
    async with asyncssh.connect(
        host,
        port=port,
        username=username,
        password=password,
        known_hosts=None,  # Fleet hosts are not pinned
        connect_timeout=connect_timeout,
    ) as conn:
        result = await conn.run(command, check=False)
        logger.debug(f"SSH {host}: '{command}' exited {result.exit_status}")
        stdout = result.stdout
        if isinstance(stdout, bytes):
            stdout = stdout.decode(errors="replace")
        return stdout or ""
