from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from stoneridge.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, password_hash: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing; ``verify`` reports mismatches and corrupt hashes as False."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False
