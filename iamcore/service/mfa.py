from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import (
    ConflictError,
    InvalidMfaCodeError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from iamcore.storage.common import keyed_digest
from iamcore.storage.models import MfaChallenge, MfaConfig

logger = get_logger(__name__)

MFA_TYPES = ("totp", "sms", "email")
CODE_DIGITS = 6


def generate_totp(secret: str, timestamp: float, *, interval: int = 30, digits: int = CODE_DIGITS) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1, dynamic truncation)."""

    cleaned = "".join(secret.split()).upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def match_totp_step(
    secret: str,
    code: str,
    timestamp: float,
    *,
    window: int = 1,
    interval: int = 30,
) -> Optional[int]:
    """Return the time step ``code`` belongs to within +/- ``window`` steps."""

    current = int(timestamp // interval)
    for offset in range(-window, window + 1):
        step = current + offset
        generated = generate_totp(secret, step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return step
    return None


def normalize_code(code: Optional[str], length: int = CODE_DIGITS) -> Optional[str]:
    if not code:
        return None
    cleaned = "".join(str(code).split()).replace("-", "")
    if len(cleaned) != length or not cleaned.isdigit():
        return None
    return cleaned


def _numeric_code(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class _LocalAttemptTracker:
    """In-process MFA attempt window used when Redis is not configured."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._locked_until: Dict[str, datetime] = {}

    async def check_mfa_lockout(self, account_id: str) -> bool:
        with self._lock:
            until = self._locked_until.get(account_id)
            if until and until > self._clock():
                return True
            self._locked_until.pop(account_id, None)
            return False

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        now = self._clock()
        window = timedelta(seconds=lockout_seconds)
        with self._lock:
            until = self._locked_until.get(account_id)
            if until and until > now:
                return (True, -1)
            count, started = self._attempts.get(account_id, (0, now))
            if now - started > window:
                count, started = 0, now
            count += 1
            if count >= max_attempts:
                self._locked_until[account_id] = now + window
                self._attempts.pop(account_id, None)
                return (True, count)
            self._attempts[account_id] = (count, started)
            return (False, count)

    async def clear_mfa_attempts(self, account_id: str) -> None:
        with self._lock:
            self._attempts.pop(account_id, None)


class MfaManager:
    """Second-factor enrollment and verification.

    TOTP secrets are encrypted by the store. SMS and email codes, and the
    backup codes, are only ever persisted as keyed digests. A failed
    verification never changes enrollment state.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        notifier=None,
        cache=None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self._clock = clock
        self._attempts = cache or _LocalAttemptTracker(clock)
        self._digest_key = settings.mfa_secret_key or settings.jwt_secret

    def _digest(self, code: str) -> str:
        return keyed_digest(code, self._digest_key)

    def _account(self, account_id: str):
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    def get_config(self, account_id: str) -> Optional[MfaConfig]:
        return self.store.get_mfa_config(account_id)

    def is_enabled(self, account_id: str) -> bool:
        cfg = self.store.get_mfa_config(account_id)
        return bool(self.settings.enable_mfa and cfg and cfg.enabled)

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def generate_totp_secret(self, account_id: str) -> str:
        self._account(account_id)
        cfg = self.store.get_mfa_config(account_id)
        if cfg and cfg.enabled:
            raise ConflictError("multi-factor authentication is already enabled")
        secret = base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")
        now = self._clock()
        self.store.save_mfa_config(
            MfaConfig(
                account_id=account_id,
                enabled=False,
                mfa_type="totp",
                secret=secret,
                created_at=cfg.created_at if cfg else now,
                updated_at=now,
            )
        )
        logger.info("mfa_totp_secret_generated", account_id=account_id)
        return secret

    def get_qr_url(self, account_id: str) -> str:
        account = self._account(account_id)
        cfg = self.store.get_mfa_config(account_id)
        if not cfg or not cfg.secret:
            raise NotFoundError("no authenticator secret has been generated")
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account.email}")
        query = urlencode(
            {
                "secret": cfg.secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": CODE_DIGITS,
                "period": self.settings.totp_interval_seconds,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    async def enable_mfa(
        self,
        account_id: str,
        code: str,
        mfa_type: str,
        phone: Optional[str] = None,
    ) -> List[str]:
        """Verify ``code`` on the chosen channel, then switch MFA on.

        Returns the plain backup codes; they are not retrievable again.
        """

        if mfa_type not in MFA_TYPES:
            raise ValidationError("unsupported mfa type", detail={"mfa_type": mfa_type})
        account = self._account(account_id)
        cfg = self.store.get_mfa_config(account_id)
        if cfg and cfg.enabled:
            raise ConflictError("multi-factor authentication is already enabled")

        if mfa_type == "totp":
            verified = await self.verify_totp(account_id, code)
        elif mfa_type == "sms":
            if not (phone or account.phone or (cfg and cfg.phone)):
                raise ValidationError("a phone number is required for sms codes")
            verified = await self.verify_sms_code(account_id, code)
        else:
            verified = await self.verify_email_code(account_id, code)
        if not verified:
            raise InvalidMfaCodeError()

        backup_codes = [
            _numeric_code(self.settings.backup_code_length)
            for _ in range(self.settings.backup_code_count)
        ]
        # Re-read: the TOTP step may have advanced during verification
        cfg = self.store.get_mfa_config(account_id) or MfaConfig(account_id=account_id)
        cfg.enabled = True
        cfg.mfa_type = mfa_type
        if mfa_type != "totp":
            cfg.secret = None
        cfg.phone = phone or cfg.phone or account.phone
        cfg.backup_code_hashes = [self._digest(c) for c in backup_codes]
        cfg.updated_at = self._clock()
        self.store.save_mfa_config(cfg)
        logger.info("mfa_enabled", account_id=account_id, mfa_type=mfa_type)
        return backup_codes

    def disable_mfa(self, account_id: str) -> bool:
        cleared = self.store.clear_mfa_config(account_id)
        logger.info("mfa_disabled", account_id=account_id, had_config=cleared)
        return cleared

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    def _issue_challenge(self, account_id: str, channel: str, destination: str) -> Tuple[MfaChallenge, str]:
        code = _numeric_code(CODE_DIGITS)
        now = self._clock()
        challenge = MfaChallenge(
            id=str(uuid.uuid4()),
            account_id=account_id,
            channel=channel,
            code_hash=self._digest(code),
            expires_at=now + timedelta(minutes=self.settings.mfa_code_ttl_minutes),
            destination=destination,
            created_at=now,
        )
        self.store.create_mfa_challenge(challenge)
        return challenge, code

    def send_sms_code(self, account_id: str, phone: Optional[str] = None) -> MfaChallenge:
        account = self._account(account_id)
        cfg = self.store.get_mfa_config(account_id)
        destination = phone or (cfg.phone if cfg else None) or account.phone
        if not destination:
            raise ValidationError("a phone number is required for sms codes")
        challenge, code = self._issue_challenge(account_id, "sms", destination)
        if self.notifier:
            self.notifier.mfa_code(account, "sms", destination, code)
        logger.info("mfa_code_sent", account_id=account_id, channel="sms")
        return challenge

    def send_email_code(self, account_id: str) -> MfaChallenge:
        account = self._account(account_id)
        challenge, code = self._issue_challenge(account_id, "email", account.email)
        if self.notifier:
            self.notifier.mfa_code(account, "email", account.email, code)
        logger.info("mfa_code_sent", account_id=account_id, channel="email")
        return challenge

    def send_code(self, account_id: str, mfa_type: Optional[str]) -> Optional[MfaChallenge]:
        if mfa_type == "sms":
            return self.send_sms_code(account_id)
        if mfa_type == "email":
            return self.send_email_code(account_id)
        return None

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_totp(self, account_id: str, code: str) -> bool:
        cleaned = normalize_code(code)
        cfg = self.store.get_mfa_config(account_id)
        if cleaned is None or not cfg or not cfg.secret:
            return False
        step = match_totp_step(
            cfg.secret,
            cleaned,
            self._clock().timestamp(),
            window=self.settings.totp_window,
            interval=self.settings.totp_interval_seconds,
        )
        if step is None:
            return False
        if not self.store.advance_totp_step(account_id, step):
            logger.warning("mfa_totp_replay", account_id=account_id)
            return False
        return True

    async def _verify_challenge(self, account_id: str, channel: str, code: str) -> bool:
        cleaned = normalize_code(code)
        if cleaned is None:
            return False
        return self.store.consume_mfa_challenge(
            account_id, channel, self._digest(cleaned), now=self._clock()
        )

    async def verify_sms_code(self, account_id: str, code: str) -> bool:
        return await self._verify_challenge(account_id, "sms", code)

    async def verify_email_code(self, account_id: str, code: str) -> bool:
        return await self._verify_challenge(account_id, "email", code)

    async def validate_backup_code(self, account_id: str, code: str) -> bool:
        cleaned = normalize_code(code, self.settings.backup_code_length)
        if cleaned is None:
            return False
        used = self.store.consume_backup_code(account_id, self._digest(cleaned))
        if used:
            logger.info("mfa_backup_code_used", account_id=account_id)
        return used

    async def verify(self, account_id: str, code: Optional[str]) -> bool:
        """Check a login-time code on the enrolled channel or as a backup code.

        Repeated failures lock MFA verification for the account; while
        locked every attempt raises ``RateLimitedError``.
        """

        if await self._attempts.check_mfa_lockout(account_id):
            raise RateLimitedError(
                "too many verification attempts",
                detail={"retry_after": self.settings.mfa_lockout_seconds},
            )
        cfg = self.store.get_mfa_config(account_id)
        if not cfg or not cfg.enabled:
            return True
        if cfg.mfa_type == "totp":
            ok = await self.verify_totp(account_id, code or "")
        elif cfg.mfa_type == "sms":
            ok = await self.verify_sms_code(account_id, code or "")
        else:
            ok = await self.verify_email_code(account_id, code or "")
        if not ok:
            ok = await self.validate_backup_code(account_id, code or "")
        if ok:
            await self._attempts.clear_mfa_attempts(account_id)
            return True
        locked, attempts = await self._attempts.atomic_mfa_attempt(
            account_id,
            max_attempts=self.settings.mfa_max_attempts,
            lockout_seconds=self.settings.mfa_lockout_seconds,
        )
        logger.warning("mfa_verification_failed", account_id=account_id, attempts=attempts, locked=locked)
        return False
