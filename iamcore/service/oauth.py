from __future__ import annotations

import base64
import json
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from iamcore.clock import Clock, utc_now
from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import (
    LastAuthMethodError,
    NotFoundError,
    OAuthExchangeFailedError,
    UnsupportedOAuthProviderError,
    ValidationError,
)
from iamcore.storage.common import normalize_email
from iamcore.storage.errors import ConstraintViolation
from iamcore.storage.models import Account, OAuthLink

logger = get_logger(__name__)


@dataclass
class OAuthProfile:
    subject: Optional[str]
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def merge(self, other: "OAuthProfile") -> "OAuthProfile":
        """Fill fields missing here from ``other``."""
        return OAuthProfile(
            subject=self.subject or other.subject,
            email=self.email or other.email,
            username=self.username or other.username,
            first_name=self.first_name or other.first_name,
            last_name=self.last_name or other.last_name,
        )


@dataclass
class OAuthResult:
    account: Account
    link: OAuthLink
    is_new_account: bool = False


@dataclass(frozen=True)
class OAuthProvider:
    """Endpoints, scopes and profile mapping for one identity provider."""

    name: str
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    extra_auth_params: Dict[str, str] = field(default_factory=dict)
    userinfo_accept: str = "application/json"

    def parse_profile(self, data: Dict[str, Any]) -> OAuthProfile:
        # OpenID Connect userinfo shape
        return OAuthProfile(
            subject=_str_or_none(data.get("sub") or data.get("id")),
            email=data.get("email"),
            username=data.get("name") or data.get("preferred_username"),
            first_name=data.get("given_name"),
            last_name=data.get("family_name"),
        )

    async def fetch_fallback_email(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[str]:
        return None


@dataclass(frozen=True)
class GoogleProvider(OAuthProvider):
    def parse_profile(self, data: Dict[str, Any]) -> OAuthProfile:
        email = data.get("email")
        return OAuthProfile(
            subject=_str_or_none(data.get("id") or data.get("sub")),
            email=email,
            username=data.get("name") or (email.split("@")[0] if email else None),
            first_name=data.get("given_name"),
            last_name=data.get("family_name"),
        )


@dataclass(frozen=True)
class MicrosoftProvider(OAuthProvider):
    def parse_profile(self, data: Dict[str, Any]) -> OAuthProfile:
        return OAuthProfile(
            subject=_str_or_none(data.get("id")),
            email=data.get("mail") or data.get("userPrincipalName"),
            username=data.get("displayName"),
            first_name=data.get("givenName"),
            last_name=data.get("surname"),
        )


@dataclass(frozen=True)
class GitHubProvider(OAuthProvider):
    def parse_profile(self, data: Dict[str, Any]) -> OAuthProfile:
        first, last = _split_name(data.get("name"))
        return OAuthProfile(
            subject=_str_or_none(data.get("id")),
            email=data.get("email"),
            username=data.get("login"),
            first_name=first,
            last_name=last,
        )

    async def fetch_fallback_email(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[str]:
        # Users with a private email only expose it through this endpoint
        response = await client.get(
            "https://api.github.com/user/emails",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": self.userinfo_accept,
            },
        )
        if response.status_code != 200:
            return None
        emails = response.json()
        if not isinstance(emails, list):
            return None
        return next(
            (
                e.get("email")
                for e in emails
                if isinstance(e, dict) and e.get("primary") and e.get("verified")
            ),
            None,
        )


OAUTH_PROVIDERS: Dict[str, OAuthProvider] = {
    provider.name: provider
    for provider in (
        GoogleProvider(
            name="google",
            auth_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
            scope="openid email profile",
            extra_auth_params={"access_type": "offline", "prompt": "consent"},
        ),
        MicrosoftProvider(
            name="microsoft",
            auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
            userinfo_url="https://graph.microsoft.com/v1.0/me",
            scope="openid email profile User.Read",
        ),
        GitHubProvider(
            name="github",
            auth_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            userinfo_url="https://api.github.com/user",
            scope="read:user user:email",
            userinfo_accept="application/vnd.github+json",
        ),
        OAuthProvider(
            name="linkedin",
            auth_url="https://www.linkedin.com/oauth/v2/authorization",
            token_url="https://www.linkedin.com/oauth/v2/accessToken",
            userinfo_url="https://api.linkedin.com/v2/userinfo",
            scope="openid profile email",
        ),
    )
}


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not name:
        return None, None
    parts = name.strip().split(" ", 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


def id_token_claims(id_token: Optional[str]) -> Dict[str, Any]:
    """Payload of an id_token received directly from the token endpoint.

    The token arrives over the authenticated back channel, so the claims
    are read without re-verifying the provider signature.
    """

    if not id_token or id_token.count(".") != 2:
        return {}
    segment = id_token.split(".")[1]
    try:
        decoded = base64.urlsafe_b64decode(segment + "=" * ((4 - len(segment) % 4) % 4))
        claims = json.loads(decoded)
    except (ValueError, TypeError):
        logger.warning("oauth_id_token_unreadable")
        return {}
    return claims if isinstance(claims, dict) else {}


class OAuthLinker:
    """Reconciles external provider identities with local accounts."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        cache=None,
        clock: Clock = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._transport = transport
        self._states: Dict[str, Tuple[str, datetime, Optional[str]]] = {}
        self._state_lock = threading.Lock()

    def _provider(self, name: str) -> OAuthProvider:
        provider = OAUTH_PROVIDERS.get((name or "").lower())
        if provider is None:
            raise UnsupportedOAuthProviderError(name)
        return provider

    def _credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        return (
            getattr(self.settings, f"oauth_{provider}_client_id", None),
            getattr(self.settings, f"oauth_{provider}_client_secret", None),
        )

    def _redirect_uri(self, redirect_uri: Optional[str]) -> str:
        candidate = redirect_uri or self.settings.oauth_redirect_uri
        if not candidate:
            raise ValidationError("no oauth redirect uri configured")
        parsed = urlparse(candidate)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ValidationError("oauth redirect uri must be an absolute http(s) url")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("insecure oauth redirect uri outside localhost")
        return candidate

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def _store_state(self, state: str, provider: str, redirect_uri: str) -> None:
        expires_at = self._clock() + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at, redirect_uri)
            return
        with self._state_lock:
            now = self._clock()
            for key in [k for k, v in self._states.items() if v[1] <= now]:
                self._states.pop(key, None)
            self._states[state] = (provider, expires_at, redirect_uri)

    async def _consume_state(self, state: str) -> Optional[Tuple[str, datetime, Optional[str]]]:
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
            if stored is None:
                return None
            return stored.get("provider"), stored["expires_at"], stored.get("redirect_uri")
        with self._state_lock:
            return self._states.pop(state, None)

    async def _check_state(self, provider: str, state: Optional[str], redirect_uri: str) -> None:
        if not state:
            if self.settings.oauth_require_state:
                logger.warning("oauth_state_missing", provider=provider)
                raise OAuthExchangeFailedError(provider, "missing oauth state")
            return
        stored = await self._consume_state(state)
        if stored is None:
            logger.warning("oauth_state_unknown", provider=provider)
            raise OAuthExchangeFailedError(provider, "invalid oauth state")
        stored_provider, expires_at, stored_redirect = stored
        if stored_provider != provider or expires_at <= self._clock():
            logger.warning("oauth_state_rejected", provider=provider, expected=stored_provider)
            raise OAuthExchangeFailedError(provider, "invalid oauth state")
        if stored_redirect and stored_redirect != redirect_uri:
            logger.warning("oauth_redirect_mismatch", provider=provider)
            raise OAuthExchangeFailedError(provider, "invalid oauth state")

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def get_authorization_url(self, provider: str, redirect_uri: Optional[str] = None) -> str:
        config = self._provider(provider)
        client_id, _ = self._credentials(config.name)
        if not client_id:
            logger.warning("oauth_not_configured", provider=config.name)
            raise ValidationError(
                "oauth provider is not configured", detail={"provider": config.name}
            )
        callback_uri = self._redirect_uri(redirect_uri)
        state = secrets.token_urlsafe(32)
        await self._store_state(state, config.name, callback_uri)
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": config.scope,
            "state": state,
            **config.extra_auth_params,
        }
        return f"{config.auth_url}?{urlencode(params)}"

    async def _exchange(
        self, config: OAuthProvider, code: str, redirect_uri: str
    ) -> Tuple[OAuthProfile, Dict[str, Any]]:
        client_id, client_secret = self._credentials(config.name)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=config.name)
            raise OAuthExchangeFailedError(config.name)

        async with self._client() as client:
            try:
                response = await client.post(
                    config.token_url,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                grant = response.json()
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "oauth_token_exchange_http_error",
                    provider=config.name,
                    status_code=exc.response.status_code,
                )
                raise OAuthExchangeFailedError(config.name) from exc
            except httpx.HTTPError as exc:
                logger.error("oauth_token_exchange_failed", provider=config.name, error=str(exc))
                raise OAuthExchangeFailedError(config.name) from exc
            except ValueError as exc:
                logger.error("oauth_token_parse_error", provider=config.name)
                raise OAuthExchangeFailedError(config.name) from exc

            access_token = grant.get("access_token") if isinstance(grant, dict) else None
            if not access_token:
                logger.error("oauth_no_access_token", provider=config.name)
                raise OAuthExchangeFailedError(config.name)

            profile: Optional[OAuthProfile] = None
            try:
                info = await client.get(
                    config.userinfo_url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": config.userinfo_accept,
                    },
                )
                info.raise_for_status()
                data = info.json()
                if isinstance(data, dict):
                    profile = config.parse_profile(data)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("oauth_profile_fetch_failed", provider=config.name, error=str(exc))

            claims = id_token_claims(grant.get("id_token"))
            fallback = OAuthProvider.parse_profile(config, claims) if claims else OAuthProfile(None)
            profile = profile.merge(fallback) if profile else fallback

            if not profile.email:
                try:
                    profile.email = await config.fetch_fallback_email(client, access_token)
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("oauth_email_lookup_failed", provider=config.name, error=str(exc))

        if not profile.subject or not profile.email:
            logger.error(
                "oauth_identity_incomplete",
                provider=config.name,
                has_subject=bool(profile.subject),
                has_email=bool(profile.email),
            )
            raise OAuthExchangeFailedError(config.name)
        return profile, grant

    def _apply_grant(self, link: OAuthLink, profile: OAuthProfile, grant: Dict[str, Any]) -> OAuthLink:
        now = self._clock()
        link.provider_subject = profile.subject
        link.provider_email = normalize_email(profile.email)
        link.provider_username = profile.username
        link.access_token = grant.get("access_token")
        link.refresh_token = grant.get("refresh_token") or link.refresh_token
        expires_in = grant.get("expires_in")
        try:
            link.token_expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        except (TypeError, ValueError):
            link.token_expires_at = None
        scope = grant.get("scope")
        if isinstance(scope, str) and scope:
            link.scopes = sorted(set(scope.replace(",", " ").split()))
        link.is_active = True
        link.updated_at = now
        return link

    def _new_link(self, account_id: str, provider: str, profile: OAuthProfile, grant: Dict[str, Any]) -> OAuthLink:
        link = OAuthLink(
            id=str(uuid.uuid4()),
            account_id=account_id,
            provider=provider,
            provider_subject=profile.subject or "",
            created_at=self._clock(),
        )
        return self._apply_grant(link, profile, grant)

    async def handle_callback(
        self,
        provider: str,
        code: str,
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
    ) -> OAuthResult:
        config = self._provider(provider)
        if not code:
            raise ValidationError("authorization code is required")
        callback_uri = self._redirect_uri(redirect_uri)
        await self._check_state(config.name, state, callback_uri)
        profile, grant = await self._exchange(config, code, callback_uri)
        return self._link(config.name, profile, grant)

    def _link(self, provider: str, profile: OAuthProfile, grant: Dict[str, Any]) -> OAuthResult:
        existing = self.store.get_oauth_link(provider, profile.subject)
        if existing is not None:
            account = self.store.get_account(existing.account_id)
            if account is None:
                raise NotFoundError("linked account no longer exists")
            link = self.store.save_oauth_link(self._apply_grant(existing, profile, grant))
            logger.info("oauth_link_refreshed", provider=provider, account_id=account.id)
            return OAuthResult(account=account, link=link, is_new_account=False)

        is_new = False
        account = self.store.get_account_by_email(profile.email)
        if account is None:
            try:
                account = self.store.create_account(
                    profile.email,
                    None,
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    tenant_id=self.settings.default_tenant_id,
                    default_roles=(self.settings.default_role,),
                    auth_provider=provider,
                    now=self._clock(),
                )
                is_new = True
                logger.info("oauth_account_created", provider=provider, account_id=account.id)
            except ConstraintViolation:
                # Created concurrently by another callback for the same email
                account = self.store.get_account_by_email(profile.email)
                if account is None:
                    raise

        prior = self.store.get_account_oauth_link(account.id, provider)
        link = self._apply_grant(prior, profile, grant) if prior else self._new_link(
            account.id, provider, profile, grant
        )
        try:
            link = self.store.save_oauth_link(link)
        except ConstraintViolation:
            raced = self.store.get_oauth_link(provider, profile.subject)
            if raced is None or raced.account_id != account.id:
                raise
            link = raced
        logger.info(
            "oauth_identity_linked",
            provider=provider,
            account_id=account.id,
            new_account=is_new,
        )
        return OAuthResult(account=account, link=link, is_new_account=is_new)

    def list_links(self, account_id: str) -> List[OAuthLink]:
        return self.store.list_oauth_links(account_id)

    def unlink(self, account_id: str, provider: str) -> None:
        config = self._provider(provider)
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        links = self.store.list_oauth_links(account_id)
        if not any(l.provider == config.name for l in links):
            raise NotFoundError("provider is not linked", detail={"provider": config.name})
        if not account.password_hash and len(links) <= 1:
            raise LastAuthMethodError()
        self.store.delete_oauth_link(account_id, config.name)
        logger.info("oauth_identity_unlinked", provider=config.name, account_id=account_id)
