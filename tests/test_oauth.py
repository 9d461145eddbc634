"""OAuth authorization URLs, code exchange and account linking."""

import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from iamcore.service.errors import (
    LastAuthMethodError,
    NotFoundError,
    OAuthExchangeFailedError,
    UnsupportedOAuthProviderError,
    ValidationError,
)
from iamcore.service.oauth import OAuthLinker, id_token_claims

REDIRECT = "https://app.example.com/oauth/callback"


def _id_token(claims):
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJSUzI1NiJ9.{payload}.sig"


class FakeProviders:
    """Answers token and profile requests the way the real providers do."""

    def __init__(self):
        self.requests = []
        self.token_status = 200
        self.userinfo_status = 200
        self.grant = {
            "access_token": "provider-access",
            "refresh_token": "provider-refresh",
            "expires_in": 3600,
            "scope": "openid email profile",
        }
        self.profiles = {
            "www.googleapis.com": {
                "id": "g-123",
                "email": "Person@Example.com",
                "name": "Pat Person",
                "given_name": "Pat",
                "family_name": "Person",
            },
            "graph.microsoft.com": {
                "id": "ms-1",
                "userPrincipalName": "pat@corp.example.com",
                "displayName": "Pat",
                "givenName": "Pat",
                "surname": "Person",
            },
            "api.github.com": {"id": 42, "login": "patp", "name": "Pat Person", "email": None},
            "api.linkedin.com": {"sub": "li-7", "email": "pat@linked.example.com", "name": "Pat"},
        }
        self.github_emails = [
            {"email": "other@example.com", "primary": False, "verified": True},
            {"email": "pat@users.example.com", "primary": True, "verified": True},
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if request.method == "POST":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.grant)
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=self.github_emails)
        if self.userinfo_status != 200:
            return httpx.Response(self.userinfo_status, json={"error": "unavailable"})
        return httpx.Response(200, json=self.profiles[host])

    def token_form(self):
        posted = next(r for r in self.requests if r.method == "POST")
        return {k: v[0] for k, v in parse_qs(posted.content.decode()).items()}


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def linker(store, settings, clock, providers):
    return OAuthLinker(store, settings, clock=clock, transport=httpx.MockTransport(providers))


async def _state_for(linker, provider, redirect_uri=None):
    url = await linker.get_authorization_url(provider, redirect_uri)
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthorizationUrl:
    async def test_google_url(self, linker, settings):
        url = await linker.get_authorization_url("google")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert parsed.netloc == "accounts.google.com"
        assert params["client_id"] == settings.oauth_google_client_id
        assert params["redirect_uri"] == REDIRECT
        assert params["response_type"] == "code"
        assert params["scope"] == "openid email profile"
        assert params["access_type"] == "offline"
        assert len(params["state"]) >= 32

    async def test_state_is_unique(self, linker):
        assert await _state_for(linker, "github") != await _state_for(linker, "github")

    async def test_provider_name_is_case_insensitive(self, linker):
        url = await linker.get_authorization_url("GitHub")
        assert url.startswith("https://github.com/login/oauth/authorize?")

    async def test_unsupported_provider(self, linker):
        with pytest.raises(UnsupportedOAuthProviderError) as excinfo:
            await linker.get_authorization_url("myspace")
        assert excinfo.value.provider == "myspace"

    async def test_unconfigured_provider(self, store, settings, clock):
        bare = OAuthLinker(
            store, settings.model_copy(update={"oauth_google_client_id": None}), clock=clock
        )
        with pytest.raises(ValidationError):
            await bare.get_authorization_url("google")

    @pytest.mark.parametrize(
        "redirect_uri",
        ["http://evil.example.com/cb", "javascript:alert(1)", "/relative/path"],
    )
    async def test_rejects_unsafe_redirect(self, linker, redirect_uri):
        with pytest.raises(ValidationError):
            await linker.get_authorization_url("google", redirect_uri)

    async def test_localhost_http_allowed(self, linker):
        url = await linker.get_authorization_url("google", "http://localhost:3000/cb")
        assert "localhost%3A3000" in url


class TestCallbackState:
    async def test_missing_state_rejected(self, linker):
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("google", "code-1")

    async def test_unknown_state_rejected(self, linker):
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("google", "code-1", state="forged")

    async def test_state_single_use(self, linker):
        state = await _state_for(linker, "google")
        await linker.handle_callback("google", "code-1", state=state)
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("google", "code-1", state=state)

    async def test_state_bound_to_provider(self, linker):
        state = await _state_for(linker, "google")
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("github", "code-1", state=state)

    async def test_state_expires(self, linker, settings, clock):
        state = await _state_for(linker, "google")
        clock.advance(minutes=settings.oauth_state_ttl_minutes + 1)
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("google", "code-1", state=state)

    async def test_redirect_must_match(self, linker):
        state = await _state_for(linker, "google")
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback(
                "google", "code-1", "https://app.example.com/other", state=state
            )

    async def test_state_optional_when_configured(self, store, settings, clock, providers):
        relaxed = OAuthLinker(
            store,
            settings.model_copy(update={"oauth_require_state": False}),
            clock=clock,
            transport=httpx.MockTransport(providers),
        )
        result = await relaxed.handle_callback("google", "code-1")
        assert result.is_new_account is True

    async def test_code_required(self, linker):
        with pytest.raises(ValidationError):
            await linker.handle_callback("google", "", state="x")


class TestExchange:
    async def test_new_account_from_google(self, linker, store, providers):
        state = await _state_for(linker, "google")
        result = await linker.handle_callback("google", "code-1", state=state)

        assert result.is_new_account is True
        assert result.account.email == "person@example.com"
        assert result.account.password_hash is None
        assert result.account.auth_provider == "google"
        assert result.account.first_name == "Pat"
        assert result.link.provider_subject == "g-123"
        assert result.link.scopes == ["email", "openid", "profile"]

        form = providers.token_form()
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-1"
        assert form["redirect_uri"] == REDIRECT

        raw = next(iter(store.oauth_links.values()))
        assert raw.access_token != "provider-access"
        assert store.get_oauth_link("google", "g-123").access_token == "provider-access"

    async def test_returning_identity_reuses_account(self, linker):
        first = await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))
        second = await linker.handle_callback("google", "c2", state=await _state_for(linker, "google"))
        assert second.is_new_account is False
        assert second.account.id == first.account.id
        assert second.link.id == first.link.id

    async def test_links_existing_account_by_email(self, linker, store, clock):
        local = store.create_account("person@example.com", "argon-hash", now=clock())
        result = await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))
        assert result.is_new_account is False
        assert result.account.id == local.id
        assert [l.provider for l in linker.list_links(local.id)] == ["google"]

    async def test_token_endpoint_error(self, linker, providers):
        providers.token_status = 400
        with pytest.raises(OAuthExchangeFailedError) as excinfo:
            await linker.handle_callback("google", "bad", state=await _state_for(linker, "google"))
        assert excinfo.value.provider == "google"

    async def test_missing_access_token(self, linker, providers):
        providers.grant = {"token_type": "bearer"}
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))

    async def test_profile_falls_back_to_id_token(self, linker, providers):
        providers.userinfo_status = 500
        providers.grant = {
            **providers.grant,
            "id_token": _id_token({"sub": "oidc-9", "email": "oidc@example.com", "given_name": "Ida"}),
        }
        result = await linker.handle_callback("linkedin", "c1", state=await _state_for(linker, "linkedin"))
        assert result.link.provider_subject == "oidc-9"
        assert result.account.email == "oidc@example.com"

    async def test_no_identity_at_all(self, linker, providers):
        providers.userinfo_status = 500
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))

    async def test_github_private_email(self, linker, providers):
        result = await linker.handle_callback("github", "c1", state=await _state_for(linker, "github"))
        assert result.account.email == "pat@users.example.com"
        assert result.link.provider_subject == "42"
        assert result.link.provider_username == "patp"
        assert result.account.last_name == "Person"
        assert any(r.url.path == "/user/emails" for r in providers.requests)

    async def test_github_email_list_with_junk_entries(self, linker, providers):
        providers.github_emails = ["pat@users.example.com", None, 7, *providers.github_emails]
        result = await linker.handle_callback("github", "c1", state=await _state_for(linker, "github"))
        assert result.account.email == "pat@users.example.com"

    async def test_github_email_list_without_usable_entries(self, linker, providers):
        providers.github_emails = ["pat@users.example.com", [], None]
        with pytest.raises(OAuthExchangeFailedError):
            await linker.handle_callback("github", "c1", state=await _state_for(linker, "github"))

    async def test_microsoft_profile_mapping(self, linker):
        result = await linker.handle_callback(
            "microsoft", "c1", state=await _state_for(linker, "microsoft")
        )
        assert result.account.email == "pat@corp.example.com"
        assert result.link.provider_subject == "ms-1"


class TestUnlink:
    async def test_cannot_remove_only_sign_in_method(self, linker):
        result = await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))
        with pytest.raises(LastAuthMethodError):
            linker.unlink(result.account.id, "google")

    async def test_unlink_with_password(self, linker, store, clock):
        local = store.create_account("person@example.com", "argon-hash", now=clock())
        await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))
        linker.unlink(local.id, "google")
        assert linker.list_links(local.id) == []

    async def test_unlink_one_of_two_providers(self, linker, providers):
        providers.profiles["api.github.com"]["email"] = "person@example.com"
        google = await linker.handle_callback("google", "c1", state=await _state_for(linker, "google"))
        await linker.handle_callback("github", "c2", state=await _state_for(linker, "github"))
        linker.unlink(google.account.id, "github")
        assert [l.provider for l in linker.list_links(google.account.id)] == ["google"]

    def test_unlink_not_linked(self, linker, store, clock):
        local = store.create_account("solo@example.com", "argon-hash", now=clock())
        with pytest.raises(NotFoundError):
            linker.unlink(local.id, "google")


class TestIdTokenClaims:
    def test_reads_payload(self):
        assert id_token_claims(_id_token({"sub": "s"})) == {"sub": "s"}

    @pytest.mark.parametrize("token", [None, "", "one.two", "a.!!!.c"])
    def test_unreadable(self, token):
        assert id_token_claims(token) == {}
