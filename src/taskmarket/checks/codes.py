"""Check codes and password hashing."""

from __future__ import annotations

import secrets

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

CODE_BYTES = 16
PASSWORD_ITERATIONS = 100_000
_SALT_BYTES = 16


def generate_code() -> str:
    """32 upper-case hex characters."""

    return secrets.token_hex(CODE_BYTES).upper()


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)


def hash_password(password: str, *, iterations: int = PASSWORD_ITERATIONS) -> str:
    """Return ``<iterations>$<salt hex>$<key hex>``."""

    salt = secrets.token_bytes(_SALT_BYTES)
    key = _kdf(salt, iterations).derive(password.encode("utf-8"))
    return f"{iterations}${salt.hex()}${key.hex()}"


def verify_password(password: str | None, stored: str) -> bool:
    if password is None:
        return False
    try:
        iterations, salt_hex, key_hex = stored.split("$")
        kdf = _kdf(bytes.fromhex(salt_hex), int(iterations))
        kdf.verify(password.encode("utf-8"), bytes.fromhex(key_hex))
    except (ValueError, InvalidKey):
        return False
    return True
