from __future__ import annotations

from typing import Tuple

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from migente_auth.logging import get_logger

logger = get_logger(__name__)

PRIMARY_ALGO = "argon2id"
# bcrypt reads at most 72 bytes of input
_BCRYPT_MAX_BYTES = 72


class PasswordService:
    """Hashing for both credential stores.

    The primary store keeps argon2id digests; the legacy table keeps the
    bcrypt digests its older readers expect.
    """

    def __init__(self, *, bcrypt_rounds: int = 12) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._bcrypt_rounds = bcrypt_rounds
        self._dummy_hash = self._pwd_hasher.hash("not-a-real-password")

    def hash_primary(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PRIMARY_ALGO

    def verify_primary(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PRIMARY_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def hash_legacy(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self._bcrypt_rounds)
        return bcrypt.hashpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], salt).decode("utf-8")

    def verify_legacy(self, stored_hash: str, password: str) -> bool:
        try:
            return bcrypt.checkpw(
                password.encode("utf-8")[:_BCRYPT_MAX_BYTES], stored_hash.encode("utf-8")
            )
        except ValueError:
            logger.warning("legacy_hash_unreadable")
            return False

    def hash_both(self, password: str) -> Tuple[str, str, str]:
        """Return ``(primary_hash, primary_algo, legacy_hash)`` for one password."""
        primary_hash, algo = self.hash_primary(password)
        return primary_hash, algo, self.hash_legacy(password)

    def burn(self, password: str) -> None:
        """Spend one verification on a throwaway hash for accounts that don't exist."""
        self.verify_primary(self._dummy_hash, PRIMARY_ALGO, password)
