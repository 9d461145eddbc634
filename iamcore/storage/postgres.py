from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from iamcore.clock import utc_now
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

# Serializes first-account role assignment across instances
_BOOTSTRAP_LOCK_KEY = 0x1A3C0DE

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        roles TEXT[] NOT NULL DEFAULT '{}',
        tenant_id TEXT NOT NULL DEFAULT 'public',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        auth_provider TEXT NOT NULL DEFAULT 'local',
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        user_agent TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_rotated_at TIMESTAMPTZ,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS device (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        fingerprint TEXT NOT NULL,
        device_type TEXT NOT NULL,
        os TEXT NOT NULL,
        browser TEXT NOT NULL,
        device_name TEXT,
        user_agent TEXT,
        ip_addr TEXT,
        first_seen TIMESTAMPTZ NOT NULL,
        last_seen TIMESTAMPTZ NOT NULL,
        trusted BOOLEAN NOT NULL DEFAULT FALSE,
        trust_score INTEGER NOT NULL DEFAULT 50,
        blocked BOOLEAN NOT NULL DEFAULT FALSE,
        login_count INTEGER NOT NULL DEFAULT 1,
        CONSTRAINT device_account_fingerprint_key UNIQUE (account_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_link (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_subject TEXT NOT NULL,
        provider_username TEXT,
        provider_email TEXT,
        access_token TEXT,
        refresh_token TEXT,
        token_expires_at TIMESTAMPTZ,
        scopes TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT oauth_link_provider_subject_key UNIQUE (provider, provider_subject),
        CONSTRAINT oauth_link_account_provider_key UNIQUE (account_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_config (
        account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_type TEXT,
        secret TEXT,
        phone TEXT,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        last_totp_step BIGINT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_challenge (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        channel TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        destination TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _is_uuid(value: Optional[str]) -> bool:
    """Ids are UUID columns; anything else cannot match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed identity store.

    Every state transition that must be atomic (lockout counting, refresh
    rotation, one-time code consumption) is a single conditional statement,
    so concurrent instances never need an application-level lock.
    """

    def __init__(
        self,
        dsn: str,
        *,
        secret_key: str | None = None,
        fs_root: str | None = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher.from_environment(secret_key, fs_root=fs_root)
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create identity tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_verified", statements=len(_SCHEMA_STATEMENTS))

    @staticmethod
    def _constraint_violation(
        exc: errors.IntegrityError, message: str, detail: Optional[dict] = None
    ) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        return ConstraintViolation(message, detail, constraint=constraint)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            roles=list(row.get("roles") or []),
            tenant_id=row.get("tenant_id", "public"),
            is_active=row.get("is_active", True),
            failed_attempts=row.get("failed_attempts", 0),
            lock_until=row.get("lock_until"),
            last_login=row.get("last_login"),
            auth_provider=row.get("auth_provider", "local"),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now(),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            last_rotated_at=row.get("last_rotated_at"),
            revoked=row.get("revoked", False),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _row_to_device(row: Dict[str, Any]) -> Device:
        return Device(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            fingerprint=row["fingerprint"],
            device_type=row["device_type"],
            os=row["os"],
            browser=row["browser"],
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            trusted=row.get("trusted", False),
            trust_score=row.get("trust_score", 50),
            blocked=row.get("blocked", False),
            login_count=row.get("login_count", 1),
        )

    def _row_to_link(self, row: Dict[str, Any]) -> OAuthLink:
        return OAuthLink(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            provider=row["provider"],
            provider_subject=row["provider_subject"],
            provider_username=row.get("provider_username"),
            provider_email=row.get("provider_email"),
            access_token=self._cipher.decrypt(row.get("access_token")),
            refresh_token=self._cipher.decrypt(row.get("refresh_token")),
            token_expires_at=row.get("token_expires_at"),
            scopes=list(row.get("scopes") or []),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now(),
        )

    @staticmethod
    def _row_to_reset_token(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used=row.get("used", False),
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utc_now(),
        )

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
        account_id = str(uuid.uuid4())
        created = now or utc_now()
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                roles = normalize_roles(default_roles)
                if bootstrap_roles:
                    conn.execute("SELECT pg_advisory_xact_lock(%s)", (_BOOTSTRAP_LOCK_KEY,))
                    row = conn.execute("SELECT EXISTS (SELECT 1 FROM account) AS taken").fetchone()
                    if not row["taken"]:
                        roles = normalize_roles(bootstrap_roles)
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, first_name, last_name, phone,
                                         roles, tenant_id, auth_provider, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalized,
                        password_hash,
                        first_name,
                        last_name,
                        phone,
                        roles,
                        tenant_id,
                        auth_provider,
                        created,
                        created,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc, "email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def account_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM account WHERE email = %s) AS found",
                (normalize_email(email),),
            ).fetchone()
        return bool(row["found"])

    def count_accounts(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM account").fetchone()
        return int(row["total"])

    def list_accounts(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Account]:
        with self._connect() as conn:
            if tenant_id:
                rows = conn.execute(
                    "SELECT * FROM account WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_account(r) for r in rows]

    def _update_account(self, account_id: str, assignments: str, params: tuple) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._update_account(account_id, "password_hash = %s", (password_hash,))

    def update_roles(self, account_id: str, roles: Iterable[str]) -> Optional[Account]:
        return self._update_account(account_id, "roles = %s", (normalize_roles(roles),))

    def set_account_active(self, account_id: str, active: bool) -> Optional[Account]:
        return self._update_account(account_id, "is_active = %s", (active,))

    def record_login_failure(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account AS a
                SET failed_attempts = counted.attempts,
                    lock_until = CASE WHEN counted.attempts >= %(max_attempts)s
                                      THEN %(lock_until)s ELSE NULL END,
                    updated_at = %(now)s
                FROM (
                    SELECT id,
                           CASE WHEN lock_until IS NOT NULL AND lock_until <= %(now)s
                                THEN 1 ELSE failed_attempts + 1 END AS attempts
                    FROM account
                    WHERE id = %(id)s
                      AND (lock_until IS NULL OR lock_until <= %(now)s)
                    FOR UPDATE
                ) AS counted
                WHERE a.id = counted.id
                RETURNING a.*
                """,
                {
                    "id": account_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": now + lock_duration,
                },
            ).fetchone()
            if row is None:
                # Either unknown or still locked; the lock is left untouched
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s", (account_id,)
                ).fetchone()
        return self._row_to_account(row) if row else None

    def record_login_success(self, account_id: str, *, now: datetime) -> Optional[Account]:
        return self._update_account(
            account_id,
            "failed_attempts = 0, lock_until = NULL, last_login = %s",
            (now,),
        )

    def clear_lockout(self, account_id: str) -> Optional[Account]:
        return self._update_account(account_id, "failed_attempts = 0, lock_until = NULL", ())

    def delete_account(self, account_id: str, *, now: Optional[datetime] = None) -> bool:
        if not _is_uuid(account_id):
            return False
        current = now or utc_now()
        with self._connect() as conn:
            live = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM auth_session
                    WHERE account_id = %s AND NOT revoked AND expires_at > %s
                ) AS live
                """,
                (account_id, current),
            ).fetchone()
            if live["live"]:
                raise ConstraintViolation(
                    "account still has active sessions",
                    {"account_id": account_id},
                    constraint="session_account_fk",
                )
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, refresh_token_hash, user_agent, ip_addr,
                                              created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.refresh_token_hash,
                        session.user_agent,
                        session.ip_addr,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise self._constraint_violation(
                exc, "account does not exist", {"account_id": session.account_id}
            )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(
                exc, "session id already exists", {"session_id": session.id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, expires_at = %s, last_rotated_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND NOT revoked AND expires_at > %s
                RETURNING *
                """,
                (new_hash, expires_at, now, session_id, expected_hash, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET revoked = TRUE, revoked_at = %s WHERE id = %s AND NOT revoked",
                (now, session_id),
            )
        return cur.rowcount > 0

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> int:
        if not _is_uuid(account_id):
            return 0
        if except_session_id is not None and not _is_uuid(except_session_id):
            except_session_id = None
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = %s
                WHERE account_id = %s AND NOT revoked AND (%s::uuid IS NULL OR id <> %s::uuid)
                """,
                (now, account_id, except_session_id, except_session_id),
            )
        return cur.rowcount

    def list_sessions(
        self, account_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]:
        if not _is_uuid(account_id):
            return []
        with self._connect() as conn:
            if active_at is None:
                rows = conn.execute(
                    "SELECT * FROM auth_session WHERE account_id = %s ORDER BY created_at",
                    (account_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM auth_session
                    WHERE account_id = %s AND NOT revoked AND expires_at > %s
                    ORDER BY created_at
                    """,
                    (account_id, active_at),
                ).fetchall()
        return [self._row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_device(self, account_id: str, fingerprint: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE account_id = %s AND fingerprint = %s",
                (account_id, fingerprint),
            ).fetchone()
        return self._row_to_device(row) if row else None

    def list_devices(self, account_id: str) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device WHERE account_id = %s ORDER BY first_seen", (account_id,)
            ).fetchall()
        return [self._row_to_device(r) for r in rows]

    def save_device(self, device: Device) -> Device:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO device (id, account_id, fingerprint, device_type, os, browser, device_name,
                                        user_agent, ip_addr, first_seen, last_seen, trusted, trust_score,
                                        blocked, login_count)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (account_id, fingerprint) DO UPDATE SET
                        device_name = EXCLUDED.device_name,
                        user_agent = EXCLUDED.user_agent,
                        ip_addr = EXCLUDED.ip_addr,
                        last_seen = GREATEST(device.last_seen, EXCLUDED.last_seen),
                        trusted = EXCLUDED.trusted,
                        trust_score = EXCLUDED.trust_score,
                        blocked = EXCLUDED.blocked,
                        login_count = EXCLUDED.login_count
                    RETURNING *
                    """,
                    (
                        device.id,
                        device.account_id,
                        device.fingerprint,
                        device.device_type,
                        device.os,
                        device.browser,
                        device.device_name,
                        device.user_agent,
                        device.ip_addr,
                        device.first_seen,
                        device.last_seen,
                        device.trusted,
                        device.trust_score,
                        device.blocked,
                        device.login_count,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise self._constraint_violation(
                exc, "account does not exist", {"account_id": device.account_id}
            )
        return self._row_to_device(row)

    def count_trusted_devices(self, account_id: str, *, seen_since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total FROM device
                WHERE account_id = %s AND trusted AND last_seen >= %s
                """,
                (account_id, seen_since),
            ).fetchone()
        return int(row["total"])

    def has_device_with_ip(self, account_id: str, ip_addr: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM device WHERE account_id = %s AND ip_addr = %s AND NOT blocked
                ) AS found
                """,
                (account_id, ip_addr),
            ).fetchone()
        return bool(row["found"])

    # ------------------------------------------------------------------
    # OAuth links
    # ------------------------------------------------------------------

    def get_oauth_link(self, provider: str, provider_subject: str) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_link WHERE provider = %s AND provider_subject = %s",
                (provider, provider_subject),
            ).fetchone()
        return self._row_to_link(row) if row else None

    def get_account_oauth_link(self, account_id: str, provider: str) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_link WHERE account_id = %s AND provider = %s",
                (account_id, provider),
            ).fetchone()
        return self._row_to_link(row) if row else None

    def list_oauth_links(self, account_id: str) -> List[OAuthLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_link WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._row_to_link(r) for r in rows]

    def save_oauth_link(self, link: OAuthLink) -> OAuthLink:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_link (id, account_id, provider, provider_subject, provider_username,
                                            provider_email, access_token, refresh_token, token_expires_at,
                                            scopes, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (id) DO UPDATE SET
                        provider_subject = EXCLUDED.provider_subject,
                        provider_username = EXCLUDED.provider_username,
                        provider_email = EXCLUDED.provider_email,
                        access_token = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        token_expires_at = EXCLUDED.token_expires_at,
                        scopes = EXCLUDED.scopes,
                        is_active = EXCLUDED.is_active,
                        updated_at = now()
                    """,
                    (
                        link.id,
                        link.account_id,
                        link.provider,
                        link.provider_subject,
                        link.provider_username,
                        link.provider_email,
                        self._cipher.encrypt(link.access_token),
                        self._cipher.encrypt(link.refresh_token),
                        link.token_expires_at,
                        list(link.scopes),
                        link.is_active,
                        link.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(
                exc, "provider identity already linked", {"provider": link.provider}
            )
        except errors.ForeignKeyViolation as exc:
            raise self._constraint_violation(
                exc, "account does not exist", {"account_id": link.account_id}
            )
        return link

    def delete_oauth_link(self, account_id: str, provider: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_link WHERE account_id = %s AND provider = %s",
                (account_id, provider),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    def get_mfa_config(self, account_id: str) -> Optional[MfaConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_config WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return MfaConfig(
            account_id=str(row["account_id"]),
            enabled=bool(row.get("enabled", False)),
            mfa_type=row.get("mfa_type"),
            secret=self._cipher.decrypt(row.get("secret")),
            phone=row.get("phone"),
            backup_code_hashes=list(row.get("backup_code_hashes") or []),
            last_totp_step=row.get("last_totp_step"),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now(),
        )

    def save_mfa_config(self, cfg: MfaConfig) -> MfaConfig:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO mfa_config (account_id, enabled, mfa_type, secret, phone,
                                            backup_code_hashes, last_totp_step, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE SET
                        enabled = EXCLUDED.enabled,
                        mfa_type = EXCLUDED.mfa_type,
                        secret = EXCLUDED.secret,
                        phone = EXCLUDED.phone,
                        backup_code_hashes = EXCLUDED.backup_code_hashes,
                        last_totp_step = EXCLUDED.last_totp_step,
                        updated_at = now()
                    """,
                    (
                        cfg.account_id,
                        cfg.enabled,
                        cfg.mfa_type,
                        self._cipher.encrypt(cfg.secret),
                        cfg.phone,
                        list(cfg.backup_code_hashes),
                        cfg.last_totp_step,
                        cfg.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise self._constraint_violation(
                exc, "account not found for mfa", {"account_id": cfg.account_id}
            )
        return cfg

    def clear_mfa_config(self, account_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM mfa_challenge WHERE account_id = %s", (account_id,))
            cur = conn.execute("DELETE FROM mfa_config WHERE account_id = %s", (account_id,))
        return cur.rowcount > 0

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_config
                SET backup_code_hashes = array_remove(backup_code_hashes, %s), updated_at = now()
                WHERE account_id = %s AND %s = ANY(backup_code_hashes)
                RETURNING account_id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    def advance_totp_step(self, account_id: str, step: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_config SET last_totp_step = %s
                WHERE account_id = %s AND (last_totp_step IS NULL OR last_totp_step < %s)
                RETURNING account_id
                """,
                (step, account_id, step),
            ).fetchone()
        return row is not None

    def create_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE mfa_challenge SET used = TRUE WHERE account_id = %s AND channel = %s AND NOT used",
                    (challenge.account_id, challenge.channel),
                )
                conn.execute(
                    """
                    INSERT INTO mfa_challenge (id, account_id, channel, code_hash, destination,
                                               expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        challenge.id,
                        challenge.account_id,
                        challenge.channel,
                        challenge.code_hash,
                        challenge.destination,
                        challenge.expires_at,
                        challenge.used,
                        challenge.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise self._constraint_violation(
                exc, "account not found for mfa challenge", {"account_id": challenge.account_id}
            )
        return challenge

    def consume_mfa_challenge(
        self, account_id: str, channel: str, code_hash: str, *, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenge SET used = TRUE
                WHERE id = (
                    SELECT id FROM mfa_challenge
                    WHERE account_id = %s AND channel = %s AND code_hash = %s
                      AND NOT used AND expires_at > %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (account_id, channel, code_hash, now),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, account_id, token_hash, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.account_id,
                        token.token_hash,
                        token.expires_at,
                        token.used,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise self._constraint_violation(
                exc, "account not found for reset token", {"account_id": token.account_id}
            )
        return token

    def invalidate_reset_tokens(self, account_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE account_id = %s AND NOT used AND expires_at > %s
                """,
                (now, account_id, now),
            )
        return cur.rowcount

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    def consume_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND NOT used AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self, cutoff: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._connect() as conn:
            for name, table in (
                ("sessions", "auth_session"),
                ("reset_tokens", "password_reset_token"),
                ("mfa_challenges", "mfa_challenge"),
            ):
                cur = conn.execute(f"DELETE FROM {table} WHERE expires_at < %s", (cutoff,))
                counts[name] = cur.rowcount
        return counts
