from __future__ import annotations

import copy
import dataclasses
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from iamcore.clock import ensure_aware, utc_now
from iamcore.logging import get_logger
from iamcore.storage.common import SecretCipher, normalize_email, normalize_roles
from iamcore.storage.errors import ConstraintViolation
from iamcore.storage.models import (
    Account,
    Device,
    MfaChallenge,
    MfaConfig,
    OAuthLink,
    PasswordResetToken,
    Session,
)

T = TypeVar("T")


class MemoryStore:
    """In-process backing store.

    Every table is guarded by one re-entrant lock, so each public method is
    atomic with respect to the others. Records handed to callers are copies;
    mutations only take effect through store methods.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        secret_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.devices: Dict[Tuple[str, str], Device] = {}
        self.oauth_links: Dict[str, OAuthLink] = {}
        self.mfa_configs: Dict[str, MfaConfig] = {}
        self.mfa_challenges: Dict[str, MfaChallenge] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so composite operations can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher.from_environment(secret_key, fs_root=fs_root)
        if self.fs_root:
            self._load_state()

    @staticmethod
    def _copy(record: T) -> T:
        return copy.deepcopy(record)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        tenant_id: str = "public",
        default_roles: Iterable[str] = ("user",),
        bootstrap_roles: Optional[Iterable[str]] = None,
        auth_provider: str = "local",
        now: Optional[datetime] = None,
    ) -> Account:
        """Insert an account; the first account ever stored gets ``bootstrap_roles``."""
        normalized = normalize_email(email)
        created = now or utc_now()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint="account_email_key",
                )
            roles = default_roles
            if bootstrap_roles and not self.accounts:
                roles = bootstrap_roles
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                roles=normalize_roles(roles),
                tenant_id=tenant_id,
                auth_provider=auth_provider,
                created_at=created,
                updated_at=created,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._copy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return self._copy(account) if account else None

    def account_exists(self, email: str) -> bool:
        normalized = normalize_email(email)
        with self._data_lock:
            return any(a.email == normalized for a in self.accounts.values())

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    def list_accounts(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Account]:
        with self._data_lock:
            results = [
                a for a in self.accounts.values() if not tenant_id or a.tenant_id == tenant_id
            ]
            ordered = sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]
            return [self._copy(a) for a in ordered]

    def _mutate_account(self, account_id: str, **updates: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for name, value in updates.items():
                setattr(account, name, value)
            account.updated_at = utc_now()
            self._persist_state()
            return self._copy(account)

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._mutate_account(account_id, password_hash=password_hash)

    def update_roles(self, account_id: str, roles: Iterable[str]) -> Optional[Account]:
        return self._mutate_account(account_id, roles=normalize_roles(roles))

    def set_account_active(self, account_id: str, active: bool) -> Optional[Account]:
        return self._mutate_account(account_id, is_active=active)

    def record_login_failure(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[Account]:
        """Atomically count a failed login and lock once ``max_attempts`` is reached.

        An expired lock is cleared first so the attempt starts a fresh count.
        A still-active lock is left untouched.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if account.lock_until is not None:
                if account.lock_until > now:
                    return self._copy(account)
                account.failed_attempts = 0
                account.lock_until = None
            account.failed_attempts += 1
            if account.failed_attempts >= max_attempts:
                account.lock_until = now + lock_duration
            account.updated_at = now
            self._persist_state()
            return self._copy(account)

    def record_login_success(self, account_id: str, *, now: datetime) -> Optional[Account]:
        return self._mutate_account(
            account_id, failed_attempts=0, lock_until=None, last_login=now
        )

    def clear_lockout(self, account_id: str) -> Optional[Account]:
        return self._mutate_account(account_id, failed_attempts=0, lock_until=None)

    def delete_account(self, account_id: str, *, now: Optional[datetime] = None) -> bool:
        """Remove an account and everything it owns.

        Accounts with live sessions must be deactivated and drained first.
        """
        current = now or utc_now()
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            if any(
                s.account_id == account_id and s.is_active(current)
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "account still has active sessions",
                    {"account_id": account_id},
                    constraint="session_account_fk",
                )
            self.accounts.pop(account_id, None)
            self.mfa_configs.pop(account_id, None)
            for table in (self.sessions, self.oauth_links, self.mfa_challenges, self.reset_tokens):
                for key in [k for k, v in table.items() if v.account_id == account_id]:
                    table.pop(key, None)
            for key in [k for k in self.devices if k[0] == account_id]:
                self.devices.pop(key, None)
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist",
                    {"account_id": session.account_id},
                    constraint="session_account_fk",
                )
            if session.id in self.sessions:
                raise ConstraintViolation(
                    "session id already exists", {"session_id": session.id}
                )
            self.sessions[session.id] = self._copy(session)
            self._persist_state()
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return self._copy(sess) if sess else None

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        """Compare-and-swap the refresh hash; ``None`` when another rotation won."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active(now):
                return None
            if sess.refresh_token_hash != expected_hash:
                return None
            sess.refresh_token_hash = new_hash
            sess.expires_at = expires_at
            sess.last_rotated_at = now
            self._persist_state()
            return self._copy(sess)

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.account_id != account_id or sess.revoked:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked = True
                sess.revoked_at = now
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_sessions(
        self, account_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]:
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.account_id == account_id
                and (active_at is None or s.is_active(active_at))
            ]
            return [self._copy(s) for s in sorted(results, key=lambda s: s.created_at)]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_device(self, account_id: str, fingerprint: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get((account_id, fingerprint))
            return self._copy(device) if device else None

    def list_devices(self, account_id: str) -> List[Device]:
        with self._data_lock:
            results = [d for (owner, _), d in self.devices.items() if owner == account_id]
            return [self._copy(d) for d in sorted(results, key=lambda d: d.first_seen)]

    def save_device(self, device: Device) -> Device:
        with self._data_lock:
            if device.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist",
                    {"account_id": device.account_id},
                    constraint="device_account_fk",
                )
            self.devices[(device.account_id, device.fingerprint)] = self._copy(device)
            self._persist_state()
            return self._copy(device)

    def count_trusted_devices(self, account_id: str, *, seen_since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for (owner, _), d in self.devices.items()
                if owner == account_id and d.trusted and d.last_seen >= seen_since
            )

    def has_device_with_ip(self, account_id: str, ip_addr: str) -> bool:
        with self._data_lock:
            return any(
                owner == account_id and d.ip_addr == ip_addr and not d.blocked
                for (owner, _), d in self.devices.items()
            )

    # ------------------------------------------------------------------
    # OAuth links
    # ------------------------------------------------------------------

    def _decrypt_link(self, link: OAuthLink) -> OAuthLink:
        plain = self._copy(link)
        plain.access_token = self._cipher.decrypt(link.access_token)
        plain.refresh_token = self._cipher.decrypt(link.refresh_token)
        return plain

    def get_oauth_link(self, provider: str, provider_subject: str) -> Optional[OAuthLink]:
        with self._data_lock:
            link = next(
                (
                    l
                    for l in self.oauth_links.values()
                    if l.provider == provider and l.provider_subject == provider_subject
                ),
                None,
            )
            return self._decrypt_link(link) if link else None

    def get_account_oauth_link(self, account_id: str, provider: str) -> Optional[OAuthLink]:
        with self._data_lock:
            link = next(
                (
                    l
                    for l in self.oauth_links.values()
                    if l.account_id == account_id and l.provider == provider
                ),
                None,
            )
            return self._decrypt_link(link) if link else None

    def list_oauth_links(self, account_id: str) -> List[OAuthLink]:
        with self._data_lock:
            return [
                self._decrypt_link(l)
                for l in self.oauth_links.values()
                if l.account_id == account_id
            ]

    def save_oauth_link(self, link: OAuthLink) -> OAuthLink:
        with self._data_lock:
            if link.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist",
                    {"account_id": link.account_id},
                    constraint="oauth_link_account_fk",
                )
            for existing in self.oauth_links.values():
                if existing.id == link.id:
                    continue
                if (
                    existing.provider == link.provider
                    and existing.provider_subject == link.provider_subject
                ):
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"provider": link.provider},
                        constraint="oauth_link_provider_subject_key",
                    )
                if existing.account_id == link.account_id and existing.provider == link.provider:
                    raise ConstraintViolation(
                        "account already linked to provider",
                        {"provider": link.provider},
                        constraint="oauth_link_account_provider_key",
                    )
            stored = self._copy(link)
            stored.access_token = self._cipher.encrypt(link.access_token)
            stored.refresh_token = self._cipher.encrypt(link.refresh_token)
            self.oauth_links[link.id] = stored
            self._persist_state()
            return self._copy(link)

    def delete_oauth_link(self, account_id: str, provider: str) -> bool:
        with self._data_lock:
            match = next(
                (
                    key
                    for key, l in self.oauth_links.items()
                    if l.account_id == account_id and l.provider == provider
                ),
                None,
            )
            if match is None:
                return False
            self.oauth_links.pop(match, None)
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    def get_mfa_config(self, account_id: str) -> Optional[MfaConfig]:
        with self._data_lock:
            cfg = self.mfa_configs.get(account_id)
            if not cfg:
                return None
            plain = self._copy(cfg)
            plain.secret = self._cipher.decrypt(cfg.secret)
            return plain

    def save_mfa_config(self, cfg: MfaConfig) -> MfaConfig:
        with self._data_lock:
            if cfg.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for mfa",
                    {"account_id": cfg.account_id},
                    constraint="mfa_config_account_fk",
                )
            stored = self._copy(cfg)
            stored.secret = self._cipher.encrypt(cfg.secret)
            stored.updated_at = utc_now()
            self.mfa_configs[cfg.account_id] = stored
            self._persist_state()
            return self._copy(cfg)

    def clear_mfa_config(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa_configs.pop(account_id, None)
            for key in [
                k for k, c in self.mfa_challenges.items() if c.account_id == account_id
            ]:
                self.mfa_challenges.pop(key, None)
            self._persist_state()
            return removed is not None

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            cfg = self.mfa_configs.get(account_id)
            if not cfg or code_hash not in cfg.backup_code_hashes:
                return False
            cfg.backup_code_hashes.remove(code_hash)
            cfg.updated_at = utc_now()
            self._persist_state()
            return True

    def advance_totp_step(self, account_id: str, step: int) -> bool:
        """Record ``step`` as used; ``False`` if it (or a later one) was already used."""
        with self._data_lock:
            cfg = self.mfa_configs.get(account_id)
            if not cfg:
                return False
            if cfg.last_totp_step is not None and step <= cfg.last_totp_step:
                return False
            cfg.last_totp_step = step
            self._persist_state()
            return True

    def create_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        """Store a new challenge, retiring unused ones for the same channel."""
        with self._data_lock:
            if challenge.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for mfa challenge",
                    {"account_id": challenge.account_id},
                    constraint="mfa_challenge_account_fk",
                )
            for existing in self.mfa_challenges.values():
                if (
                    existing.account_id == challenge.account_id
                    and existing.channel == challenge.channel
                ):
                    existing.used = True
            self.mfa_challenges[challenge.id] = self._copy(challenge)
            self._persist_state()
            return self._copy(challenge)

    def consume_mfa_challenge(
        self, account_id: str, channel: str, code_hash: str, *, now: datetime
    ) -> bool:
        with self._data_lock:
            for challenge in self.mfa_challenges.values():
                if (
                    challenge.account_id == account_id
                    and challenge.channel == channel
                    and challenge.code_hash == code_hash
                    and challenge.is_valid(now)
                ):
                    challenge.used = True
                    self._persist_state()
                    return True
            return False

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for reset token",
                    {"account_id": token.account_id},
                    constraint="reset_token_account_fk",
                )
            self.reset_tokens[token.id] = self._copy(token)
            self._persist_state()
            return self._copy(token)

    def invalidate_reset_tokens(self, account_id: str, *, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for token in self.reset_tokens.values():
                if token.account_id == account_id and token.is_valid(now):
                    token.used = True
                    token.used_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash), None
            )
            return self._copy(token) if token else None

    def consume_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash), None
            )
            if not token or not token.is_valid(now):
                return None
            token.used = True
            token.used_at = now
            self._persist_state()
            return self._copy(token)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self, cutoff: datetime) -> Dict[str, int]:
        """Delete sessions, reset tokens and MFA challenges expired before ``cutoff``."""
        with self._data_lock:
            counts = {}
            for name, table in (
                ("sessions", self.sessions),
                ("reset_tokens", self.reset_tokens),
                ("mfa_challenges", self.mfa_challenges),
            ):
                stale = [key for key, record in table.items() if record.expires_at < cutoff]
                for key in stale:
                    table.pop(key, None)
                counts[name] = len(stale)
            if any(counts.values()):
                self._persist_state()
            return counts

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = dataclasses.asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: Type[T], data: dict) -> T:
        values = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and "datetime" in str(f.type):
                value = ensure_aware(datetime.fromisoformat(value))
            values[f.name] = value
        return cls(**values)

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "devices": [self._serialize(d) for d in self.devices.values()],
            "oauth_links": [self._serialize(l) for l in self.oauth_links.values()],
            "mfa_configs": [self._serialize(c) for c in self.mfa_configs.values()],
            "mfa_challenges": [self._serialize(c) for c in self.mfa_challenges.values()],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize(Account, a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        devices = [self._deserialize(Device, d) for d in data.get("devices", [])]
        self.devices = {(d.account_id, d.fingerprint): d for d in devices}
        self.oauth_links = {
            l["id"]: self._deserialize(OAuthLink, l) for l in data.get("oauth_links", [])
        }
        self.mfa_configs = {
            c["account_id"]: self._deserialize(MfaConfig, c)
            for c in data.get("mfa_configs", [])
        }
        self.mfa_challenges = {
            c["id"]: self._deserialize(MfaChallenge, c)
            for c in data.get("mfa_challenges", [])
        }
        self.reset_tokens = {
            t["id"]: self._deserialize(PasswordResetToken, t)
            for t in data.get("reset_tokens", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
