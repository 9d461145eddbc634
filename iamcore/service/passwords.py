from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import WeakPasswordError

logger = get_logger(__name__)

COMMON_PASSWORDS = frozenset(
    {"password", "12345678", "qwerty", "admin", "letmein", "welcome", "monkey"}
)
COMMON_FRAGMENTS = ("password", "123456")

DEFAULT_PASSWORD_PEPPER = "iamcore-password-v1"


class PasswordPolicy:
    """Strength rules applied on registration, reset and password change."""

    def __init__(self, min_length: int = 8, max_length: int = 128) -> None:
        self.min_length = min_length
        self.max_length = max_length

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(settings.password_min_length, settings.password_max_length)

    def validate(self, password: str) -> None:
        """Raise ``WeakPasswordError`` for the first rule the password breaks."""

        if not isinstance(password, str) or len(password) < self.min_length:
            raise WeakPasswordError(
                "length", f"password must be at least {self.min_length} characters"
            )
        if len(password) > self.max_length:
            raise WeakPasswordError(
                "length", f"password must be at most {self.max_length} characters"
            )
        if any(ch.isspace() for ch in password):
            raise WeakPasswordError("whitespace", "password must not contain whitespace")
        if not any(ch.isupper() for ch in password):
            raise WeakPasswordError("uppercase", "password needs an uppercase letter")
        if not any(ch.islower() for ch in password):
            raise WeakPasswordError("lowercase", "password needs a lowercase letter")
        if not any(ch.isdigit() for ch in password):
            raise WeakPasswordError("digit", "password needs a digit")
        if all(ch.isalnum() for ch in password):
            raise WeakPasswordError("symbol", "password needs a symbol")
        lowered = password.lower()
        if lowered in COMMON_PASSWORDS or any(frag in lowered for frag in COMMON_FRAGMENTS):
            raise WeakPasswordError("common_password", "password is too common")
        for idx in range(len(password) - 2):
            if password[idx] == password[idx + 1] == password[idx + 2]:
                raise WeakPasswordError(
                    "repeated_characters",
                    "password must not repeat a character three times in a row",
                )


class CredentialVerifier:
    """argon2id hashing and constant-cost verification.

    Every password is first reduced to a keyed HMAC-SHA256 digest, so inputs
    of any length hash in full and a submitted string is never handed to
    argon2 as is. Changing the pepper invalidates every stored hash.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        pepper: str = DEFAULT_PASSWORD_PEPPER,
    ) -> None:
        self._pepper = pepper.encode("utf-8")
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            pepper=settings.password_pepper,
        )

    def _prepare(self, password: str) -> str:
        digest = hmac.new(self._pepper, password.encode("utf-8", "surrogatepass"), hashlib.sha256)
        return base64.b64encode(digest.digest()).decode("ascii")

    def _dummy(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))
        return self._dummy_hash

    def hash(self, password: str) -> str:
        return self._hasher.hash(self._prepare(password))

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        """Check ``password`` against ``stored_hash``.

        A missing hash still costs one full argon2 verification against a
        dummy hash so unknown and password-less accounts cannot be told
        apart by timing.
        """

        if not stored_hash:
            try:
                self._hasher.verify(self._dummy(), self._prepare(password or ""))
            except VerificationError:
                pass
            return False
        try:
            return self._hasher.verify(stored_hash, self._prepare(password or ""))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password: str, stored_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, password, stored_hash)
