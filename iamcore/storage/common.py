"""Storage helpers shared between the memory and postgres backends.

Both backends must hash lookup secrets and encrypt secrets at rest the same
way so that data written by one can be read by the other.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from pathlib import Path
from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from iamcore.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_token(raw: str) -> str:
    """One-way digest for high-entropy secrets (refresh and reset tokens)."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def keyed_digest(raw: str, key: str) -> str:
    """HMAC digest for low-entropy secrets such as numeric one-time codes."""
    return hmac.new(key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


def digests_match(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return hmac.compare_digest(left, right)


def normalize_roles(roles: Iterable[str]) -> List[str]:
    return sorted({role.strip().lower() for role in roles if role and role.strip()})


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for secrets stored at rest (TOTP seeds, provider tokens)."""

    def __init__(self, key_material: str) -> None:
        try:
            self._fernet = Fernet(derive_cipher_key(key_material))
        except (ValueError, TypeError) as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    @classmethod
    def from_environment(
        cls, key_material: str | None = None, *, fs_root: str | Path | None = None
    ) -> "SecretCipher":
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            root = Path(fs_root or os.getenv("SHARED_FS_ROOT", "/srv/iamcore"))
            secret_path = root / ".secret_key"
            try:
                if secret_path.exists():
                    material = secret_path.read_text().strip()
            except OSError as exc:
                logger.warning("secret_key_read_failed", error=str(exc))
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    root.mkdir(parents=True, exist_ok=True)
                    secret_path.write_text(material)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist secret encryption key") from exc
        return cls(material)

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("secret_decrypt_failed")
            raise
