from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sysauth.logging import get_logger

logger = get_logger(__name__)


class Argon2Hasher:
    """argon2id password hashing behind the ``CredentialHasher`` protocol."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        try:
            return self._pwd_hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False


def hash_secret(value: str) -> str:
    """Base64 SHA-256 digest used for approval tokens, codes and magic links."""
    return base64.b64encode(hashlib.sha256(value.encode("utf-8")).digest()).decode("ascii")


def secret_matches(value: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_secret(value), stored_hash)


def generate_url_token(num_bytes: int = 32) -> str:
    """URL-safe random token without padding."""
    return secrets.token_urlsafe(num_bytes)


# Unambiguous alphabet: no 0/O, 1/I/L.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def generate_human_code(length: int = 8) -> str:
    """Short code a person can type, formatted ``XXXX-XXXX``."""
    raw = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    half = length // 2
    return f"{raw[:half]}-{raw[half:]}"


def normalize_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()
