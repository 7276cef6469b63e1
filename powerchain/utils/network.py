"""Network utility functions."""
import asyncio
import re

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$")


def normalize_mac(mac: str) -> str:
    """Normalize MAC address to colon-separated lowercase."""
    return mac.replace("-", ":").lower()


def mac_to_bytes(mac: str) -> bytes:
    """Convert a MAC address to its 6 raw bytes.

    Raises:
        ValueError: If the MAC address is malformed.
    """
    if not MAC_PATTERN.match(mac):
        raise ValueError(f"Invalid MAC address format: {mac}")
    return bytes.fromhex(normalize_mac(mac).replace(":", ""))


def build_magic_packet(mac: str) -> bytes:
    """Build a Wake-on-LAN magic packet: 6 x 0xFF then the MAC 16 times."""
    return b"\xff" * 6 + mac_to_bytes(mac) * 16


async def probe_tcp_port(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to host:port opens within timeout.

    Only the handshake is checked; nothing is sent.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
