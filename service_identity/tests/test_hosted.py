"""
Unit tests for the hosted identity platform adapter.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from jose import jwt as jose_jwt

from service_identity.app.federation.hosted import HostedIdentityAdapter, ManagementTokenCache
from service_identity.app.federation.state import OAuthStateStore
from service_identity.app.federation.sync import FederatedSessionIssuer, IdentitySynchronizer
from service_identity.app.keys.directory import KeyDirectory
from service_identity.app.keys.generator import generate_key_pair, public_jwk
from service_identity.app.tokens.refresh import RefreshTokenLifecycle
from service_identity.app.tokens.service import TokenService
from shared.errors import DomainError, ErrorKind, UpstreamError
from shared.test_helpers import InMemoryRecordStore, TestDataFactory

DOMAIN = "tenant.example-idp.com"
ISSUER = f"https://{DOMAIN}/"
API_AUDIENCE = "https://api.example.com"


class PlatformServer:
    """Minimal hosted platform: key set, token endpoint, profile and users API."""

    def __init__(self):
        self.key_pair = generate_key_pair()
        self.published = [public_jwk(self.key_pair)]
        self.requests = []
        self.token_requests = []
        self.profile = {"sub": "auth0|1", "email": "jane@example.com", "email_verified": True,
                        "given_name": "Jane", "family_name": "Doe"}
        self.login_tokens = {}
        self.users_answer = httpx.Response(201, json={"user_id": "auth0|2"})
        self.delete_answer = httpx.Response(204)

    def sign(self, key_pair=None, **claims):
        key_pair = key_pair or self.key_pair
        now = int(time.time())
        payload = {"sub": "auth0|1", "iss": ISSUER, "aud": API_AUDIENCE, "iat": now, "exp": now + 300}
        payload.update(claims)
        return jose_jwt.encode(payload, key_pair.private_key, algorithm="RS256", headers={"kid": key_pair.kid})

    def paths(self, path):
        return [request for request in self.requests if request.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/jwks.json":
            return httpx.Response(200, json={"keys": self.published})
        if path == "/oauth/token":
            body = json.loads(request.content)
            self.token_requests.append(body)
            if body["grant_type"] == "client_credentials":
                return httpx.Response(200, json={"access_token": f"mgmt-{len(self.token_requests)}",
                                                 "expires_in": 86400})
            return httpx.Response(200, json=self.login_tokens)
        if path == "/userinfo":
            return httpx.Response(200, json=self.profile)
        if path == "/api/v2/users" and request.method == "POST":
            return self.users_answer
        if path.startswith("/api/v2/users/") and request.method == "DELETE":
            return self.delete_answer
        return httpx.Response(404)


class TestHostedIdentityAdapter:
    """Test cases for HostedIdentityAdapter."""

    @pytest.fixture
    def store(self):
        store = InMemoryRecordStore()
        store.add_key()
        return store

    @pytest.fixture
    def token_service(self, store):
        return TokenService(KeyDirectory(store), issuer="http://localhost:8010", audience="http://localhost:3000")

    @pytest.fixture
    def platform(self):
        return PlatformServer()

    @pytest.fixture
    def states(self):
        return OAuthStateStore()

    def _adapter(self, store, token_service, states, platform, **kwargs):
        sessions = FederatedSessionIssuer(IdentitySynchronizer(store), token_service, RefreshTokenLifecycle(store))
        kwargs.setdefault("audience", API_AUDIENCE)
        return HostedIdentityAdapter(
            domain=DOMAIN,
            client_id="hosted-client",
            client_secret="hosted-secret",
            states=states,
            sessions=sessions,
            redirect_base="http://localhost:8010",
            transport=httpx.MockTransport(platform),
            **kwargs
        )

    @pytest.fixture
    def adapter(self, store, token_service, states, platform):
        return self._adapter(store, token_service, states, platform)

    @pytest.mark.asyncio
    async def test_verify_platform_token(self, adapter, platform):
        claims = await adapter.verify_token(platform.sign())

        assert claims["sub"] == "auth0|1"
        assert claims["aud"] == API_AUDIENCE

    @pytest.mark.asyncio
    async def test_key_set_is_cached(self, adapter, platform):
        await adapter.verify_token(platform.sign())
        await adapter.verify_token(platform.sign(sub="auth0|9"))

        assert len(platform.paths("/.well-known/jwks.json")) == 1

    @pytest.mark.asyncio
    async def test_unknown_kid_refreshes_key_set_once(self, adapter, platform):
        await adapter.verify_token(platform.sign())
        rotated = generate_key_pair()
        platform.published.append(public_jwk(rotated))

        claims = await adapter.verify_token(platform.sign(key_pair=rotated))
        await adapter.verify_token(platform.sign(key_pair=rotated))

        assert claims["sub"] == "auth0|1"
        assert len(platform.paths("/.well-known/jwks.json")) == 2

    @pytest.mark.asyncio
    async def test_unknown_kids_refresh_at_most_once_per_cooldown(self, adapter, platform):
        await adapter.verify_token(platform.sign())

        for _ in range(3):
            with pytest.raises(DomainError) as exc_info:
                await adapter.verify_token(platform.sign(key_pair=generate_key_pair()))
            assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

        assert len(platform.paths("/.well-known/jwks.json")) == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_refreshes_again_after_cooldown(self, store, token_service, states, platform):
        adapter = self._adapter(store, token_service, states, platform, jwks_refresh_cooldown=0)
        await adapter.verify_token(platform.sign())

        for _ in range(2):
            with pytest.raises(DomainError):
                await adapter.verify_token(platform.sign(key_pair=generate_key_pair()))

        assert len(platform.paths("/.well-known/jwks.json")) == 3

    @pytest.mark.asyncio
    async def test_unpublished_kid_is_invalid(self, adapter, platform):
        stranger = generate_key_pair()

        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token(platform.sign(key_pair=stranger))

        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, adapter, platform):
        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token(platform.sign(iss="https://evil.example.com/"))

        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_wrong_audience(self, adapter, platform):
        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token(platform.sign(aud="https://other.example.com"))

        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_expired_platform_token(self, adapter, platform):
        now = int(time.time())

        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token(platform.sign(iat=now - 600, exp=now - 300))

        assert exc_info.value.kind == ErrorKind.TOKEN_EXPIRED

    @pytest.mark.asyncio
    async def test_own_tokens_are_not_platform_tokens(self, adapter, token_service):
        own = await token_service.issue_access_token(TestDataFactory.user())

        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token(own)

        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_malformed_and_missing_tokens(self, adapter):
        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token("garbage")
        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

        with pytest.raises(DomainError) as exc_info:
            await adapter.verify_token("")
        assert exc_info.value.kind == ErrorKind.TOKEN_REQUIRED

    @pytest.mark.asyncio
    async def test_key_set_outage(self, store, token_service, states):
        adapter = self._adapter(store, token_service, states, lambda request: httpx.Response(503))

        with pytest.raises(UpstreamError):
            await adapter.verify_token(PlatformServer().sign())

    @pytest.mark.asyncio
    async def test_login_with_token(self, adapter, platform, store):
        result = await adapter.login_with_token(platform.sign())

        assert result.provider == "hosted"
        assert result.user.email == "jane@example.com"
        assert result.user.provider_id == "auth0|1"
        assert len(store.users) == 1

    @pytest.mark.asyncio
    async def test_login_with_token_without_api_audience_requires_client_audience(
            self, store, token_service, states, platform):
        adapter = self._adapter(store, token_service, states, platform, audience=None)

        with pytest.raises(DomainError) as exc_info:
            await adapter.login_with_token(platform.sign(aud="https://some-other-api.example.com"))

        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID
        assert store.users == {}

        result = await adapter.login_with_token(platform.sign(aud="hosted-client"))
        assert result.user.email == "jane@example.com"

    @pytest.mark.asyncio
    async def test_login_with_token_for_another_subject(self, adapter, platform):
        platform.profile["sub"] = "auth0|someone-else"

        with pytest.raises(DomainError) as exc_info:
            await adapter.login_with_token(platform.sign())

        assert exc_info.value.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_callback_verifies_access_token(self, adapter, platform):
        platform.login_tokens = {"access_token": platform.sign(), "token_type": "Bearer"}
        request = await adapter.start()

        result = await adapter.complete("auth-code", request.state)

        assert result.user.email == "jane@example.com"
        exchange = platform.token_requests[0]
        assert exchange["grant_type"] == "authorization_code"
        assert exchange["redirect_uri"] == "http://localhost:8010/auth/callback/hosted"

    @pytest.mark.asyncio
    async def test_callback_verifies_id_token_without_audience(self, store, token_service, states, platform):
        adapter = self._adapter(store, token_service, states, platform, audience=None)
        platform.login_tokens = {
            "access_token": "opaque-access-token",
            "id_token": platform.sign(aud="hosted-client"),
        }
        request = await adapter.start()

        result = await adapter.complete("auth-code", request.state)

        assert result.provider == "hosted"

    @pytest.mark.asyncio
    async def test_callback_rejects_forged_state(self, adapter, platform):
        with pytest.raises(DomainError) as exc_info:
            await adapter.complete("auth-code", "forged")

        assert exc_info.value.kind == ErrorKind.INVALID_OAUTH_STATE
        assert platform.token_requests == []

    @pytest.mark.asyncio
    async def test_authorization_url(self, adapter):
        request = await adapter.start()

        parsed = urlparse(request.url)
        params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"https://{DOMAIN}/authorize"
        assert params["audience"] == API_AUDIENCE
        assert params["scope"] == "openid profile email"
        assert params["state"] == request.state

    @pytest.mark.asyncio
    async def test_not_configured(self, store, token_service, states, platform):
        sessions = FederatedSessionIssuer(IdentitySynchronizer(store), token_service, RefreshTokenLifecycle(store))
        adapter = HostedIdentityAdapter(None, None, None, states, sessions, "http://localhost:8010")

        assert adapter.configured is False
        with pytest.raises(DomainError) as exc_info:
            await adapter.start()
        assert exc_info.value.kind == ErrorKind.PROVIDER_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_create_remote_user_reuses_management_token(self, adapter, platform):
        await adapter.create_remote_user("a@example.com", "Str0ng!pass", first_name="Ada")
        await adapter.create_remote_user("b@example.com", "Str0ng!pass")

        grants = [body for body in platform.token_requests if body["grant_type"] == "client_credentials"]
        assert len(grants) == 1
        assert grants[0]["audience"] == f"https://{DOMAIN}/api/v2/"

        creations = platform.paths("/api/v2/users")
        assert [request.headers["Authorization"] for request in creations] == ["Bearer mgmt-1"] * 2
        first_body = json.loads(creations[0].content)
        assert first_body["connection"] == "Username-Password-Authentication"
        assert first_body["given_name"] == "Ada"
        assert "family_name" not in first_body

    @pytest.mark.asyncio
    async def test_create_remote_user_conflict(self, adapter, platform):
        platform.users_answer = httpx.Response(409, json={"message": "The user already exists."})

        with pytest.raises(DomainError) as exc_info:
            await adapter.create_remote_user("a@example.com", "Str0ng!pass")

        assert exc_info.value.kind == ErrorKind.EMAIL_ALREADY_IN_USE

    @pytest.mark.asyncio
    async def test_rejected_management_token_is_dropped(self, adapter, platform):
        platform.users_answer = httpx.Response(401, json={"message": "Invalid token"})

        with pytest.raises(UpstreamError):
            await adapter.create_remote_user("a@example.com", "Str0ng!pass")

        platform.users_answer = httpx.Response(201, json={"user_id": "auth0|3"})
        await adapter.create_remote_user("a@example.com", "Str0ng!pass")

        grants = [body for body in platform.token_requests if body["grant_type"] == "client_credentials"]
        assert len(grants) == 2

    @pytest.mark.asyncio
    async def test_delete_remote_user(self, adapter, platform):
        assert await adapter.delete_remote_user("auth0|2") is True

        platform.delete_answer = httpx.Response(404)
        assert await adapter.delete_remote_user("auth0|2") is False


class TestManagementTokenCache:
    """Test cases for ManagementTokenCache."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0)
            return f"token-{len(calls)}", 3600

        cache = ManagementTokenCache(fetch)

        tokens = await asyncio.gather(*(cache.get() for _ in range(5)))

        assert tokens == ["token-1"] * 5
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_refreshes_at_margin(self):
        now = [0.0]
        fetch = AsyncMock(side_effect=[("first", 3600), ("second", 3600)])
        cache = ManagementTokenCache(fetch, margin_seconds=300, clock=lambda: now[0])

        assert await cache.get() == "first"
        now[0] = 3299.0
        assert await cache.get() == "first"
        now[0] = 3300.0
        assert await cache.get() == "second"
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_short_lived_token_is_not_reused(self):
        fetch = AsyncMock(side_effect=[("first", 60), ("second", 60)])
        cache = ManagementTokenCache(fetch, margin_seconds=300)

        assert await cache.get() == "first"
        assert await cache.get() == "second"

    @pytest.mark.asyncio
    async def test_invalidate(self):
        fetch = AsyncMock(side_effect=[("first", 3600), ("second", 3600)])
        cache = ManagementTokenCache(fetch)

        await cache.get()
        cache.invalidate()

        assert await cache.get() == "second"
