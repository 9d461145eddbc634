from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

import httpx

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.devices import DeviceTrustEngine
from iamcore.service.errors import (
    DeviceBlockedError,
    DuplicateEmailError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    InvalidOrExpiredTokenError,
    MfaRequiredError,
    NotFoundError,
    ValidationError,
)
from iamcore.service.lockout import LockoutTracker
from iamcore.service.mfa import MfaManager
from iamcore.service.oauth import OAuthLinker
from iamcore.service.password_reset import PasswordResetService
from iamcore.service.passwords import CredentialVerifier, PasswordPolicy
from iamcore.service.sessions import SessionManager
from iamcore.service.tokens import ACCESS, TokenIssuer
from iamcore.storage.errors import ConstraintViolation
from iamcore.storage.models import Account, Session


@dataclass
class AccountView:
    """Public projection of an account returned to clients."""

    id: str
    email: str
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    tenant_id: str = "public"

    @classmethod
    def from_account(cls, account: Account) -> "AccountView":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            first_name=account.first_name,
            last_name=account.last_name,
            roles=sorted(account.roles),
            tenant_id=account.tenant_id,
        )


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: AccountView
    token_type: str = "Bearer"
    is_new_user: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "user": self.user.__dict__.copy(),
            "is_new_user": self.is_new_user,
        }


class AuthService:
    """Turns credentials into sessions.

    Owns the login pipeline (lockout, password, device, MFA) and exposes the
    collaborating components as attributes so callers can reach device,
    MFA and reset operations directly.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        cache=None,
        notifier=None,
        clock: Clock = utc_now,
        oauth_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self._clock = clock
        self.logger = get_logger(__name__)

        self.policy = PasswordPolicy.from_settings(settings)
        self.verifier = CredentialVerifier.from_settings(settings)
        self.issuer = TokenIssuer(settings, clock=clock)
        self.sessions = SessionManager(store, self.issuer, settings, clock=clock)
        self.lockout = LockoutTracker(store, settings, clock=clock)
        self.devices = DeviceTrustEngine(store, settings, clock=clock)
        self.mfa = MfaManager(store, settings, notifier=notifier, cache=cache, clock=clock)
        self.oauth = OAuthLinker(
            store, settings, cache=cache, clock=clock, transport=oauth_transport
        )
        self.password_reset = PasswordResetService(
            store,
            settings,
            self.verifier,
            self.sessions,
            self.lockout,
            policy=self.policy,
            notifier=notifier,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(
        self,
        account: Account,
        user_agent: Optional[str],
        ip_addr: Optional[str],
        *,
        is_new_user: bool = False,
    ) -> AuthResult:
        _, refresh_token = self.sessions.open(account, user_agent, ip_addr)
        return self._result(account, refresh_token, is_new_user=is_new_user)

    def _result(self, account: Account, refresh_token: str, *, is_new_user: bool = False) -> AuthResult:
        access_token = self.issuer.issue_access(
            account.id, account.email, account.roles, account.tenant_id
        )
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.issuer.access_ttl_seconds,
            user=AccountView.from_account(account),
            is_new_user=is_new_user,
        )

    @staticmethod
    def _check_email(email: str) -> str:
        cleaned = (email or "").strip()
        local, _, domain = cleaned.partition("@")
        if not local or "." not in domain or " " in cleaned:
            raise ValidationError("a valid email address is required", detail={"field": "email"})
        return cleaned

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("registration is disabled")
        email = self._check_email(email)
        self.policy.validate(password)
        if self.store.account_exists(email):
            raise DuplicateEmailError()
        password_hash = await self.verifier.hash_async(password)
        try:
            account = self.store.create_account(
                email,
                password_hash,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                tenant_id=self.settings.default_tenant_id,
                default_roles=(self.settings.default_role,),
                bootstrap_roles=(self.settings.bootstrap_role,),
                now=self._clock(),
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailError() from exc
        self.devices.register_or_update(account.id, user_agent, ip_addr)
        result = self._issue(account, user_agent, ip_addr, is_new_user=True)
        if self.notifier:
            self.notifier.welcome(account)
        self.logger.info("account_registered", account_id=account.id, roles=account.roles)
        return result

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        mfa_code: Optional[str] = None,
    ) -> AuthResult:
        account = self.store.get_account_by_email(email or "")
        if account is None:
            # Same argon2 cost as a real check
            await self.verifier.verify_async(password or "", None)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()

        self.lockout.ensure_unlocked(account)

        password_ok = await self.verifier.verify_async(password or "", account.password_hash)
        if not account.is_active:
            self.logger.warning("login_failed", reason="inactive", account_id=account.id)
            raise InvalidCredentialsError()
        if not password_ok:
            self.lockout.record_failure(account.id)
            self.logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError()

        fingerprint = self.devices.fingerprint(user_agent, ip_addr)
        if self.devices.is_blocked(account.id, fingerprint):
            self.logger.warning("login_failed", reason="device_blocked", account_id=account.id)
            raise DeviceBlockedError()
        suspicious = self.devices.is_suspicious(account.id, fingerprint, ip_addr)

        if self.mfa.is_enabled(account.id):
            cfg = self.mfa.get_config(account.id)
            mfa_type = cfg.mfa_type if cfg else "totp"
            if not mfa_code:
                self.mfa.send_code(account.id, mfa_type)
                self.logger.info("login_mfa_required", account_id=account.id, mfa_type=mfa_type)
                raise MfaRequiredError(mfa_type or "totp")
            if not await self.mfa.verify(account.id, mfa_code):
                raise InvalidMfaCodeError()

        device = self.devices.register_or_update(account.id, user_agent, ip_addr)
        if self.verifier.needs_rehash(account.password_hash):
            self.store.update_password(account.id, await self.verifier.hash_async(password))
            self.logger.info("password_rehashed", account_id=account.id)
        account = self.lockout.record_success(account.id) or account
        result = self._issue(account, user_agent, ip_addr)
        if suspicious and self.notifier:
            self.notifier.login_alert(account, device.device_name, ip_addr)
        self.logger.info(
            "login_succeeded", account_id=account.id, device_id=device.id, suspicious=suspicious
        )
        return result

    async def refresh(self, refresh_token: str) -> AuthResult:
        session = self.sessions.validate(refresh_token)
        if session is None:
            raise InvalidOrExpiredTokenError()
        account = self.store.get_account(session.account_id)
        if account is None or not account.is_active:
            self.sessions.revoke(session.id)
            raise InvalidOrExpiredTokenError()
        new_refresh = self.issuer.issue_refresh(account.id, session.id)
        if self.sessions.rotate(session, new_refresh) is None:
            raise InvalidOrExpiredTokenError()
        return self._result(account, new_refresh)

    async def logout(self, refresh_token: str) -> bool:
        """Revoke the session behind ``refresh_token``; unknown tokens are ignored."""

        session = self.sessions.validate(refresh_token)
        if session is None:
            return False
        return self.sessions.revoke(session.id)

    async def logout_all(self, account_id: str) -> int:
        return self.sessions.revoke_all(account_id)

    async def oauth_login(
        self,
        provider: str,
        code: str,
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        linked = await self.oauth.handle_callback(provider, code, redirect_uri, state)
        account = self.store.get_account(linked.account.id) or linked.account
        if not account.is_active:
            raise InvalidCredentialsError()
        self.lockout.ensure_unlocked(account)
        fingerprint = self.devices.fingerprint(user_agent, ip_addr)
        if self.devices.is_blocked(account.id, fingerprint):
            raise DeviceBlockedError()
        self.devices.register_or_update(account.id, user_agent, ip_addr)
        account = self.lockout.record_success(account.id) or account
        result = self._issue(account, user_agent, ip_addr, is_new_user=linked.is_new_account)
        if linked.is_new_account and self.notifier:
            self.notifier.welcome(account)
        self.logger.info(
            "oauth_login_succeeded",
            provider=linked.link.provider,
            account_id=account.id,
            new_account=linked.is_new_account,
        )
        return result

    async def authenticate(self, access_token: str) -> dict[str, Any]:
        claims = self.issuer.validate(access_token, ACCESS)
        if claims is None:
            raise InvalidOrExpiredTokenError()
        return claims

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password and sign out every other session.

        Returns the number of sessions revoked.
        """

        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        if not await self.verifier.verify_async(current_password or "", account.password_hash):
            self.logger.warning("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError()
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        self.policy.validate(new_password)
        self.store.update_password(account_id, await self.verifier.hash_async(new_password))
        revoked = self.sessions.revoke_all(account_id, except_session_id=keep_session_id)
        if self.notifier:
            self.notifier.password_changed(account)
        self.logger.info("password_changed", account_id=account_id, sessions_revoked=revoked)
        return revoked

    def list_sessions(self, account_id: str) -> List[Session]:
        return self.sessions.list_active(account_id)
