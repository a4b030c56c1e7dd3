from __future__ import annotations

import bcrypt

from webengine.core.config import get_settings


# bcrypt only reads the first 72 bytes of a secret.
_BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, *, rounds: int | None = None) -> str:
    cost = rounds or get_settings().password_hash_rounds
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=cost)).decode("ascii")


def verify_password(password: str, password_hash: str | None) -> bool:
    # Malformed stored hashes count as a mismatch rather than a server error.
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("ascii"))
    except ValueError:
        return False
