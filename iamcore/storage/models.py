from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from iamcore.clock import utc_now


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["user"])
    tenant_id: str = "public"
    is_active: bool = True
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    auth_provider: str = "local"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    meta: Dict | None = None

    @property
    def name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.email.split("@", 1)[0]

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now


@dataclass
class MfaConfig:
    account_id: str
    enabled: bool = False
    mfa_type: Optional[str] = None
    secret: Optional[str] = None
    phone: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    last_totp_step: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class Session:
    id: str
    account_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    last_rotated_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        refresh_token_hash: str,
        *,
        now: datetime,
        ttl_minutes: int = 7 * 24 * 60,
        session_id: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        return cls(
            id=session_id or str(uuid.uuid4()),
            account_id=account_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class Device:
    id: str
    account_id: str
    fingerprint: str
    device_type: str = "desktop"
    os: str = "Unknown"
    browser: str = "Unknown"
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    first_seen: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    trusted: bool = False
    trust_score: int = 50
    blocked: bool = False
    login_count: int = 1


@dataclass
class OAuthLink:
    id: str
    account_id: str
    provider: str
    provider_subject: str
    provider_username: Optional[str] = None
    provider_email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class PasswordResetToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def is_valid(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class MfaChallenge:
    id: str
    account_id: str
    channel: str
    code_hash: str
    expires_at: datetime
    used: bool = False
    destination: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def is_valid(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at
