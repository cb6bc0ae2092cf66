"""
Unit tests for RecordStoreClient.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import jwt
import pytest

from service_identity.app.adapters.record_store import RecordStoreClient
from service_identity.app.models import KeyPair
from shared.circuit_breaker import CircuitBreaker
from shared.errors import DomainError, ErrorKind, UpstreamError
from shared.test_helpers import TestDataFactory

BASE_URL = "http://record-store:8080"
SERVICE_SECRET = "record-store-shared-secret-for-tests-only"


def _ok(data, status_code=200):
    return httpx.Response(status_code, json={"success": True, "data": data})


def _client(handler, **kwargs):
    kwargs.setdefault("circuit_breaker", CircuitBreaker(
        failure_threshold=50, recovery_timeout=30.0, expected_exception=UpstreamError, name="test-store"
    ))
    return RecordStoreClient(
        BASE_URL,
        service_id="identity-core",
        service_secret=SERVICE_SECRET,
        transport=httpx.MockTransport(handler),
        **kwargs
    )


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("shared.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestRecordStoreClient:
    """Test cases for RecordStoreClient."""

    @pytest.mark.asyncio
    async def test_get_user_parses_camel_case(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _ok(TestDataFactory.store_user_payload(emailVerified=True, passwordHash="x"))

        store = _client(handler)
        user = await store.get_user_by_email("jane.doe@example.com")
        await store.close()

        assert user.id == "user-123"
        assert user.first_name == "Jane"
        assert user.email_verified is True
        assert not hasattr(user, "password_hash")
        assert seen[0].url.path == "/api/v1/users/email/jane.doe@example.com"

    @pytest.mark.asyncio
    async def test_requests_carry_service_credential(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _ok(TestDataFactory.store_user_payload())

        store = _client(handler)
        await store.get_user_by_id("user-123")
        await store.get_user_by_id("user-123")

        first = seen[0].headers["Authorization"]
        assert first.startswith("Bearer ")
        claims = jwt.decode(first.split(" ", 1)[1], SERVICE_SECRET, algorithms=["HS256"])
        assert claims["serviceId"] == "identity-core"
        assert "tokens:write" in claims["permissions"]
        assert claims["exp"] - claims["iat"] == 300
        assert seen[1].headers["Authorization"] == first

    @pytest.mark.asyncio
    async def test_missing_record_is_none(self):
        store = _client(lambda request: httpx.Response(404, json={"success": False}))

        assert await store.get_user_by_id("missing") is None
        assert await store.get_active_key_pair() is None
        assert await store.get_refresh_token_by_value("missing") is None

    @pytest.mark.asyncio
    async def test_create_user_sends_camel_case(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return _ok(TestDataFactory.store_user_payload(email=body["email"]), status_code=201)

        store = _client(handler)
        user = await store.create_user({"email": "new@example.com", "password": "pw", "first_name": "Ada",
                                        "email_verified": False})

        assert user.email == "new@example.com"
        assert seen[0] == {"email": "new@example.com", "password": "pw", "firstName": "Ada",
                           "emailVerified": False}

    @pytest.mark.asyncio
    async def test_create_user_conflict(self):
        store = _client(lambda request: httpx.Response(409, json={"success": False, "error": "exists"}))

        with pytest.raises(DomainError) as exc_info:
            await store.create_user({"email": "dup@example.com", "password": "pw"})

        assert exc_info.value.kind == ErrorKind.EMAIL_ALREADY_IN_USE

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        store = _client(handler, retries=1)

        with pytest.raises(UpstreamError) as exc_info:
            await store.get_user_by_id("user-123")

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_server_error_is_upstream_unavailable(self):
        store = _client(lambda request: httpx.Response(503), retries=1)

        with pytest.raises(UpstreamError) as exc_info:
            await store.get_user_by_id("user-123")

        assert exc_info.value.kind == ErrorKind.UPSTREAM_UNAVAILABLE
        assert exc_info.value.status_code == 503
        assert exc_info.value.to_response().message == "A dependency is temporarily unavailable"

    @pytest.mark.asyncio
    async def test_idempotent_reads_are_retried(self, no_backoff):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502)
            return _ok(TestDataFactory.store_user_payload())

        store = _client(handler, retries=3)
        user = await store.get_user_by_id("user-123")

        assert user.id == "user-123"
        assert len(calls) == 3
        assert no_backoff.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise_with_capped_backoff(self, no_backoff):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        store = _client(handler, retries=6)

        with pytest.raises(UpstreamError):
            await store.get_user_by_id("user-123")

        assert len(calls) == 6
        delays = [call.args[0] for call in no_backoff.await_args_list]
        for delay, expected in zip(delays, [0.2, 0.4, 0.8, 1.6, 2.0]):
            assert expected * 0.9 <= delay <= expected * 1.1

    @pytest.mark.asyncio
    async def test_writes_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        store = _client(handler, retries=3)

        with pytest.raises(UpstreamError):
            await store.revoke_refresh_token_by_value("token")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60.0,
                                 expected_exception=UpstreamError, name="test-open")
        store = _client(handler, retries=1, circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(UpstreamError):
                await store.get_user_by_id("user-123")

        with pytest.raises(UpstreamError) as exc_info:
            await store.get_user_by_id("user-123")

        assert "circuit open" in exc_info.value.message
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_domain_answers_do_not_trip_circuit(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0,
                                 expected_exception=UpstreamError, name="test-domain")
        store = _client(lambda request: httpx.Response(404), circuit_breaker=breaker)

        for _ in range(3):
            assert await store.get_user_by_id("missing") is None

        assert breaker.is_open() is False

    @pytest.mark.asyncio
    async def test_conditional_revoke(self):
        answers = iter([
            _ok({"wasActive": True}),
            _ok({"wasActive": False}),
            _ok({}),
            httpx.Response(404),
        ])
        store = _client(lambda request: next(answers))

        first = await store.revoke_refresh_token_by_value("token")
        second = await store.revoke_refresh_token_by_value("token")
        legacy = await store.revoke_refresh_token_by_value("token")
        missing = await store.revoke_refresh_token_by_value("other")

        assert (first.found, first.was_active) == (True, True)
        assert (second.found, second.was_active) == (True, False)
        assert (legacy.found, legacy.was_active) == (True, True)
        assert missing.found is False

    @pytest.mark.asyncio
    async def test_verify_password(self):
        def handler(request):
            body = json.loads(request.content)
            assert request.url.path == "/api/v1/users/user-123/verify-password"
            return _ok({"isValid": body["password"] == "right"})

        store = _client(handler)

        assert await store.verify_password("user-123", "right") is True
        assert await store.verify_password("user-123", "wrong") is False

    @pytest.mark.asyncio
    async def test_jwks_accepts_both_shapes(self):
        key = {"kty": "RSA", "kid": "k1", "n": "abc", "e": "AQAB"}
        answers = iter([_ok({"keys": [key]}), _ok([key]), httpx.Response(404)])
        store = _client(lambda request: next(answers))

        assert await store.get_active_key_pairs_as_jwks() == [key]
        assert await store.get_active_key_pairs_as_jwks() == [key]
        assert await store.get_active_key_pairs_as_jwks() == []

    @pytest.mark.asyncio
    async def test_refresh_token_round_trip_uses_store_fields(self):
        expires_at = datetime.now(timezone.utc) + timedelta(days=7)
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return _ok({**body, "id": "rt-1"}, status_code=201)

        store = _client(handler)
        record = await store.create_refresh_token("abc", "user-1", None, expires_at)

        assert set(seen[0]) == {"token", "userId", "expiresAt"}
        assert record.user_id == "user-1"
        assert record.is_expired() is False

    @pytest.mark.asyncio
    async def test_create_key_pair_sends_pem(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append(body)
            return _ok(body, status_code=201)

        store = _client(handler)
        key_pair = KeyPair(kid="k1", private_key="PRIVATE", public_key="PUBLIC")
        created = await store.create_key_pair(key_pair)

        assert seen[0]["privateKey"] == "PRIVATE"
        assert seen[0]["status"] == "ACTIVE"
        assert created.kid == "k1"

    @pytest.mark.asyncio
    async def test_revoke_all_returns_count(self):
        store = _client(lambda request: _ok({"count": 3}))

        assert await store.revoke_all_user_refresh_tokens("user-1") == 3

    @pytest.mark.asyncio
    async def test_health_check(self):
        healthy = _client(lambda request: httpx.Response(200, json={"status": "ok"}))
        broken = _client(lambda request: httpx.Response(503))

        assert await healthy.health_check() is True
        assert await broken.health_check() is False
