"""Credential vault for SSH passwords and platform API bundles.

Secrets are stored as Fernet tokens keyed off ``settings.secret_key``;
rotating the secret key makes existing tokens undecryptable.
"""
import base64
import hashlib
import json
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet

from powerchain.config import settings


@lru_cache(maxsize=4)
def _fernet_for(secret_key: str) -> Fernet:
    digest = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def get_fernet() -> Fernet:
    """Fernet instance for the configured secret key."""
    return _fernet_for(settings.secret_key)


def encrypt_value(value: str) -> str:
    """Encrypt a single secret such as an SSH password."""
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(token: str) -> str:
    """Decrypt a value produced by encrypt_value.

    Raises:
        cryptography.fernet.InvalidToken: The token was not produced with
            the current secret key.
    """
    return get_fernet().decrypt(token.encode()).decode()


def encrypt_json(bundle: dict[str, Any]) -> str:
    """Encrypt a credential bundle (API token, or username/password)."""
    return encrypt_value(json.dumps(bundle, sort_keys=True))


def decrypt_json(token: str) -> dict[str, Any]:
    return json.loads(decrypt_value(token))
