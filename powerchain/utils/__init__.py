"""Utility modules for PowerChain."""
from powerchain.utils.crypto import (
    decrypt_json,
    decrypt_value,
    encrypt_json,
    encrypt_value,
    get_fernet,
)
from powerchain.utils.network import probe_tcp_port

__all__ = [
    "encrypt_value",
    "decrypt_value",
    "encrypt_json",
    "decrypt_json",
    "get_fernet",
    "probe_tcp_port",
]
