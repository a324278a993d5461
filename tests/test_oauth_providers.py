"""Tests for the OAuth2 provider client using a mocked HTTP transport."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from shopauth.config import Settings
from shopauth.service.auth import AuthService
from shopauth.service.blacklist import TokenBlacklist
from shopauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ResourceNotFoundError,
    ValidationError,
)
from shopauth.service.oauth_providers import (
    OAuthIdentity,
    OAuthProviderClient,
    generate_username,
    parse_userinfo,
    provider_metadata,
    split_name,
)
from shopauth.service.one_time_store import MemoryOneTimeStore
from shopauth.service.security_events import SecurityEventLog
from shopauth.service.tokens import TokenCodec
from shopauth.storage.memory import MemoryStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_secret="oauth-provider-test-secret-" + "z" * 64,
        oauth_redirect_base_url="https://api.shop.example.com",
        oauth_google_client_id="google-id",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-id",
        oauth_github_client_secret="github-secret",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth(store, settings, clock):
    codec = TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )
    return AuthService(
        store,
        store,
        codec,
        TokenBlacklist(clock=clock),
        SecurityEventLog(store, clock=clock),
        settings,
        clock=clock,
    )


@pytest.fixture
def state_store(clock):
    return MemoryOneTimeStore(600, clock=clock, schedule_removal=False)


def _provider_handler(userinfo, *, emails=None, token_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if "token" in request.url.path:
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "bad_verification_code"})
            return httpx.Response(200, json={"access_token": "provider-token"})
        if url.startswith("https://api.github.com/user/emails"):
            return httpx.Response(200, json=emails or [])
        assert request.headers["Authorization"] == "Bearer provider-token"
        return httpx.Response(200, json=userinfo)

    return handler


def _client(settings, auth, state_store, handler):
    return OAuthProviderClient(
        settings, auth, state_store, transport=httpx.MockTransport(handler)
    )


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestHelpers:
    def test_provider_metadata_points_at_local_authorization_route(self):
        meta = provider_metadata()
        assert set(meta) == {"google", "github", "facebook"}
        assert meta["github"]["authUrl"] == "/v1/oauth2/authorization/github"
        assert meta["google"]["name"] == "Google"

    def test_parse_github_userinfo_without_email(self):
        identity = parse_userinfo("github", {"id": 7, "login": "octo", "name": None})
        assert identity.email == "octo@github.com"
        assert identity.name == "octo"
        assert identity.provider_uid == "7"

    def test_parse_facebook_picture(self):
        identity = parse_userinfo(
            "facebook",
            {"id": "1", "email": "f@example.com", "picture": {"data": {"url": "https://img"}}},
        )
        assert identity.avatar == "https://img"

    def test_split_name(self):
        assert split_name("Ada King Lovelace") == ("Ada", "King Lovelace")
        assert split_name("Cher") == ("Cher", "")
        assert split_name(None) == ("User", "")

    def test_generate_username(self):
        assert generate_username("jane.doe+shop@example.com", "google") == "jane_doe_shop_goo"


class TestAuthorizationUrl:
    def test_builds_provider_url_with_state(self, settings, auth, state_store):
        client = OAuthProviderClient(settings, auth, state_store)
        url = client.authorization_url("google")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.netloc == "accounts.google.com"
        assert query["client_id"] == ["google-id"]
        assert query["redirect_uri"] == [
            "https://api.shop.example.com/v1/auth/oauth2/callback/google"
        ]
        assert query["response_type"] == ["code"]
        assert client.consume_state("google", query["state"][0])

    def test_state_is_single_use_and_provider_bound(self, settings, auth, state_store):
        client = OAuthProviderClient(settings, auth, state_store)
        state = _state_from(client.authorization_url("google"))
        assert not client.consume_state("github", state)
        assert not client.consume_state("google", state)
        assert not client.consume_state("google", None)

    def test_unsupported_provider(self, settings, auth, state_store):
        client = OAuthProviderClient(settings, auth, state_store)
        with pytest.raises(ResourceNotFoundError):
            client.authorization_url("myspace")

    def test_unconfigured_provider(self, settings, auth, state_store):
        client = OAuthProviderClient(settings, auth, state_store)
        with pytest.raises(ValidationError):
            client.authorization_url("facebook")


class TestComplete:
    async def test_first_login_creates_user(self, settings, auth, state_store, store):
        handler = _provider_handler(
            {"id": "g-1", "email": "grace@example.com", "name": "Grace Hopper", "picture": "https://img/g"}
        )
        client = _client(settings, auth, state_store, handler)
        state = _state_from(client.authorization_url("google"))

        result = await client.complete("google", "auth-code", state)

        user = store.get_user_by_email("grace@example.com")
        assert result.provider == "google"
        assert result.user.id == user.id
        assert user.username == "grace_goo"
        assert (user.first_name, user.last_name) == ("Grace", "Hopper")
        assert user.avatar == "https://img/g"
        assert auth.authenticate(result.access_token).user_id == user.id

    async def test_existing_user_is_reused_and_filled_in(self, settings, auth, state_store, store):
        existing = store.create_user("grace@example.com", "grace")
        handler = _provider_handler(
            {"id": "g-1", "email": "grace@example.com", "name": "Grace Hopper", "picture": "https://img/g"}
        )
        client = _client(settings, auth, state_store, handler)
        state = _state_from(client.authorization_url("google"))

        result = await client.complete("google", "auth-code", state)

        assert result.user.id == existing.id
        user = store.get_user(existing.id)
        assert user.username == "grace"
        assert user.first_name == "Grace"
        assert user.avatar == "https://img/g"

    async def test_username_collision_gets_suffix(self, settings, auth, state_store, store):
        store.create_user("someone@example.com", "grace_goo")
        handler = _provider_handler({"id": "g-1", "email": "grace@example.com", "name": "Grace"})
        client = _client(settings, auth, state_store, handler)
        state = _state_from(client.authorization_url("google"))

        result = await client.complete("google", "auth-code", state)

        assert result.user.username.startswith("grace_goo_")
        assert result.user.username != "grace_goo"

    async def test_github_private_email_uses_emails_endpoint(self, settings, auth, state_store):
        handler = _provider_handler(
            {"id": 9, "login": "octo", "name": "Octo Cat", "email": None},
            emails=[
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ],
        )
        client = _client(settings, auth, state_store, handler)
        state = _state_from(client.authorization_url("github"))

        result = await client.complete("github", "auth-code", state)
        assert result.user.email == "octo@example.com"

    async def test_invalid_state_is_rejected(self, settings, auth, state_store):
        client = _client(settings, auth, state_store, _provider_handler({}))
        with pytest.raises(AuthenticationError, match="state"):
            await client.complete("google", "auth-code", "forged-state")

    async def test_token_endpoint_error(self, settings, auth, state_store):
        client = _client(settings, auth, state_store, _provider_handler({}, token_status=400))
        state = _state_from(client.authorization_url("google"))
        with pytest.raises(AuthenticationError, match="exchange failed"):
            await client.complete("google", "bad-code", state)

    async def test_missing_email_is_rejected(self, settings, auth, state_store):
        client = _client(settings, auth, state_store, _provider_handler({"id": "g-1"}))
        state = _state_from(client.authorization_url("google"))
        with pytest.raises(AuthenticationError, match="Email not provided"):
            await client.complete("google", "auth-code", state)

    async def test_locked_user_is_refused(self, settings, auth, state_store, store):
        store.create_user("grace@example.com", "grace", is_locked=True)
        handler = _provider_handler({"id": "g-1", "email": "grace@example.com", "name": "Grace"})
        client = _client(settings, auth, state_store, handler)
        state = _state_from(client.authorization_url("google"))
        with pytest.raises(AccountLockedError):
            await client.complete("google", "auth-code", state)


def test_resolve_user_handles_concurrent_creation(settings, auth, state_store, store):
    client = OAuthProviderClient(settings, auth, state_store)
    identity = OAuthIdentity("google", "g-1", "grace@example.com", "Grace Hopper")
    original_create = auth.create_external_user

    def racing_create(email, username, **kwargs):
        # Another callback wins the race between the lookup and the insert
        original_create(email, "grace_other")
        return original_create(email, username, **kwargs)

    auth.create_external_user = racing_create
    user = client.resolve_user(identity)
    assert user.username == "grace_other"
