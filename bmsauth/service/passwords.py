from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bmsauth.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier:
    """argon2id hashing with constant-time verification.

    ``verify`` never raises: a mismatch, an empty hash and a malformed hash
    all come back as ``False``.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the identifier is unknown so both branches cost the same.
        self._dummy_hash = self._hasher.hash("bmsauth-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str | None) -> bool:
        if not password_hash or password is None:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def verify_dummy(self, password: str) -> None:
        """Burn the same work as a real verify; the result is always discarded."""
        self.verify(password or "", self._dummy_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
