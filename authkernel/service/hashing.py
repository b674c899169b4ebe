from __future__ import annotations

import hashlib
import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

# 256 bits of entropy; token_urlsafe(32) yields 43 characters
_OPAQUE_TOKEN_BYTES = 32


class CredentialHasher:
    """One-way hashing for passwords and opaque tokens.

    Passwords go through salted Argon2id. Opaque tokens (refresh, reset,
    verification) are high-entropy random values, so a plain SHA-256 digest
    is enough and keeps them addressable by hash.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        if settings is not None:
            self._pwd_hasher = PasswordHasher(
                time_cost=settings.argon2_time_cost,
                memory_cost=settings.argon2_memory_cost,
                parallelism=settings.argon2_parallelism,
                type=Type.ID,
            )
        else:
            self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Hashed up front so the first decoy verification costs the same as the rest
        self._decoy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def verify_password(
        self, stored_hash: Optional[str], algo: Optional[str], password: str
    ) -> bool:
        if not stored_hash:
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_against_decoy(self, password: str) -> bool:
        """Run one full verification against a throwaway hash.

        Login calls this when there is no usable stored hash so that a
        missing account costs the same Argon2 work as a wrong password.
        Always returns False.
        """
        self.verify_password(self._decoy_hash, PASSWORD_ALGO, password)
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    @staticmethod
    def hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    @staticmethod
    def new_opaque_token() -> str:
        return secrets.token_urlsafe(_OPAQUE_TOKEN_BYTES)


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 64


def password_policy_violation(password: Optional[str]) -> Optional[str]:
    """Return a user-facing message when ``password`` is unacceptable."""
    if not password or not password.strip():
        return "password is required"
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"password must be at least {PASSWORD_MIN_LENGTH} characters"
    if len(password) > PASSWORD_MAX_LENGTH:
        return f"password must be at most {PASSWORD_MAX_LENGTH} characters"
    return None
