from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from iamcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/iamcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/iamcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT after each mutation",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("iamcore", "JWT_ISSUER")
    jwt_audience: str = env_field("iamcore-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0, le=300)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    # Sessions
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS", ge=1)
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        ge=0,
        description="Expired sessions are deleted once expired longer than this",
    )
    sweep_interval_seconds: int = env_field(3600, "SWEEP_INTERVAL_SECONDS", ge=0)

    # Accounts and credentials
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    default_role: str = env_field("user", "DEFAULT_ROLE")
    bootstrap_role: str = env_field(
        "super_admin",
        "BOOTSTRAP_ROLE",
        description="Role assigned to the first account ever registered",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", gt=0)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=8)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="argon2 memory in KiB"
    )
    password_pepper: str = env_field(
        "iamcore-password-v1",
        "PASSWORD_PEPPER",
        description="HMAC key applied to every password before argon2; changing it invalidates stored hashes",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Devices
    device_fingerprint_salt: str = env_field(
        "iamcore-device-fingerprint", "DEVICE_FINGERPRINT_SALT"
    )
    max_trusted_devices: int = env_field(5, "MAX_TRUSTED_DEVICES", ge=1)
    device_inactivity_days: int = env_field(90, "DEVICE_INACTIVITY_DAYS", gt=0)

    # MFA
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_issuer: str = env_field("IAMCore", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting MFA secrets and cached provider tokens",
    )
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0, le=10)
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS", gt=0)
    mfa_code_ttl_minutes: int = env_field(10, "MFA_CODE_TTL_MINUTES", gt=0)
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1)
    backup_code_length: int = env_field(8, "BACKUP_CODE_LENGTH", ge=7)
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", ge=1)
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS", gt=0)

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_linkedin_client_id: str | None = env_field(None, "OAUTH_LINKEDIN_CLIENT_ID")
    oauth_linkedin_client_secret: str | None = env_field(None, "OAUTH_LINKEDIN_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS", gt=0)
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES", gt=0)
    oauth_require_state: bool = env_field(
        True,
        "OAUTH_REQUIRE_STATE",
        description="Reject OAuth callbacks that do not present an issued state value",
    )

    # Email / SMS
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("IAMCore", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def refresh_signing_secret(self) -> str:
        """Refresh tokens are signed with their own key.

        Without an explicit ``JWT_REFRESH_SECRET`` the key is derived from
        ``JWT_SECRET`` so access tokens can never be replayed as refresh tokens.
        """
        if self.jwt_refresh_secret:
            return self.jwt_refresh_secret
        return hashlib.sha256(f"refresh:{self.jwt_secret}".encode()).hexdigest()

    @field_validator("password_max_length")
    @classmethod
    def _validate_password_bounds(cls, value: int, info) -> int:
        min_length = info.data.get("password_min_length", 8)
        if value < min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must not be below PASSWORD_MIN_LENGTH")
        return value

    @field_validator("password_hash_memory_cost")
    @classmethod
    def _validate_memory_cost(cls, value: int, info) -> int:
        parallelism = info.data.get("password_hash_parallelism", 4)
        # argon2 needs at least 8 KiB per lane
        return max(value, 8 * parallelism)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/iamcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
