from __future__ import annotations

import secrets
import uuid
from datetime import timedelta
from typing import Optional

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import InvalidOrExpiredTokenError, ValidationError
from iamcore.service.passwords import CredentialVerifier, PasswordPolicy
from iamcore.storage.common import hash_token
from iamcore.storage.models import PasswordResetToken

logger = get_logger(__name__)


class PasswordResetService:
    """Email-link password recovery with single-use, hashed tokens."""

    def __init__(
        self,
        store,
        settings: Settings,
        verifier: CredentialVerifier,
        sessions,
        lockout,
        *,
        policy: Optional[PasswordPolicy] = None,
        notifier=None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        self.sessions = sessions
        self.lockout = lockout
        self.policy = policy or PasswordPolicy.from_settings(settings)
        self.notifier = notifier
        self._clock = clock

    def initiate(self, email: str) -> Optional[str]:
        """Start a reset for ``email``.

        Unknown and inactive accounts are ignored silently so the caller's
        response cannot reveal which emails are registered. Returns the raw
        token when one was issued; it is never stored.
        """

        account = self.store.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("password_reset_ignored")
            return None
        now = self._clock()
        self.store.invalidate_reset_tokens(account.id, now=now)
        raw = secrets.token_hex(32)
        self.store.create_reset_token(
            PasswordResetToken(
                id=str(uuid.uuid4()),
                account_id=account.id,
                token_hash=hash_token(raw),
                expires_at=now + timedelta(minutes=self.settings.password_reset_ttl_minutes),
                created_at=now,
            )
        )
        if self.notifier:
            self.notifier.password_reset(account, raw)
        logger.info("password_reset_initiated", account_id=account.id)
        return raw

    def validate(self, token: str) -> bool:
        if not token:
            return False
        record = self.store.get_reset_token(hash_token(token))
        return bool(record and record.is_valid(self._clock()))

    async def reset(self, token: str, new_password: str, confirm_password: str) -> None:
        if new_password != confirm_password:
            raise ValidationError(
                "passwords do not match", detail={"field": "confirm_password"}
            )
        self.policy.validate(new_password)
        if not token:
            raise InvalidOrExpiredTokenError()
        # The token is consumed only once the new hash is ready
        new_hash = await self.verifier.hash_async(new_password)
        record = self.store.consume_reset_token(hash_token(token), now=self._clock())
        if record is None:
            logger.warning("password_reset_token_rejected")
            raise InvalidOrExpiredTokenError()
        account = self.store.update_password(record.account_id, new_hash)
        if account is None:
            raise InvalidOrExpiredTokenError()
        self.lockout.clear(account.id)
        revoked = self.sessions.revoke_all(account.id)
        if self.notifier:
            self.notifier.password_changed(account)
        logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)
