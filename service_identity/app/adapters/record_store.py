"""
Record store client for the Identity service.

The record store owns users, OAuth clients, signing keys and refresh tokens.
Every request carries a short-lived HS256 service credential; responses are
wrapped as ``{"success": ..., "data": ...}`` with camelCase fields.
"""

import time
from datetime import datetime
from typing import Dict, Any, Optional, List
from urllib.parse import quote

import httpx
import jwt
from pydantic.alias_generators import to_camel

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind, UpstreamError
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.retry import RetryConfig, call_with_retry
from ..models import User, OAuthClient, KeyPair, RefreshTokenRecord, RevocationOutcome

SERVICE_NAME = "record-store"

SERVICE_PERMISSIONS = [
    "users:read", "users:write",
    "clients:read", "clients:write",
    "keys:read", "keys:write",
    "tokens:read", "tokens:write",
]


def _camelize(data: Dict[str, Any]) -> Dict[str, Any]:
    return {to_camel(key): value for key, value in data.items()}


class RecordStoreClient:
    """Client for the remote record store."""

    def __init__(self,
                 base_url: str,
                 service_id: str,
                 service_secret: str,
                 timeout: float = 10.0,
                 retries: int = 3,
                 service_token_ttl: int = 300,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/")
        self.service_id = service_id
        self.service_secret = service_secret
        self.timeout = timeout
        self.service_token_ttl = service_token_ttl
        self.logger = get_logger("identity.record_store")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=UpstreamError,
            name=SERVICE_NAME
        )
        self.retry_config = RetryConfig(
            max_attempts=retries,
            base_delay=0.2,
            max_delay=2.0
        )

        self._service_token: Optional[str] = None
        self._service_token_expires_at = 0.0

    @classmethod
    def from_config(cls, config, **kwargs) -> "RecordStoreClient":
        return cls(
            base_url=config.record_store_url,
            service_id=config.service_id,
            service_secret=config.service_secret,
            timeout=config.record_store_timeout,
            retries=config.record_store_retries,
            service_token_ttl=config.service_token_ttl,
            **kwargs
        )

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    def _service_credential(self) -> str:
        """Self-issued credential, reused until a minute before it expires."""
        now = time.time()
        if self._service_token and now < self._service_token_expires_at - 60:
            return self._service_token

        expires_at = int(now) + self.service_token_ttl
        self._service_token = jwt.encode(
            {
                "serviceId": self.service_id,
                "permissions": SERVICE_PERMISSIONS,
                "iat": int(now),
                "exp": expires_at,
            },
            self.service_secret,
            algorithm="HS256"
        )
        self._service_token_expires_at = expires_at
        return self._service_token

    async def _send(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = await self._get_client().request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {self._service_credential()}"}
            )
        except httpx.TimeoutException as e:
            self.logger.error("Record store timeout", method=method, path=path)
            raise UpstreamError(SERVICE_NAME, ErrorKind.TIMEOUT, "request timed out",
                                details={"path": path}) from e
        except httpx.HTTPError as e:
            self.logger.error("Record store unreachable", method=method, path=path, error=str(e))
            raise UpstreamError(SERVICE_NAME, message="request failed",
                                details={"path": path, "error": str(e)}) from e

        if response.status_code >= 500:
            self.logger.error("Record store error", method=method, path=path, status_code=response.status_code)
            raise UpstreamError(SERVICE_NAME, message=f"unexpected status {response.status_code}",
                                details={"path": path, "status_code": response.status_code})
        return response

    async def _guarded_send(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self.circuit_breaker.call(self._send, method, path, json)
        except CircuitBreakerOpenException as e:
            raise UpstreamError(SERVICE_NAME, message="circuit open", details={"path": path}) from e

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                       idempotent: bool = False) -> httpx.Response:
        if idempotent:
            return await call_with_retry(
                self._guarded_send, method, path, json,
                exceptions=(UpstreamError,),
                config=self.retry_config
            )
        return await self._guarded_send(method, path, json)

    def _unwrap(self, response: httpx.Response) -> Any:
        """Return the ``data`` member of a response, ``None`` on 404."""
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            self.logger.error("Record store rejected request",
                              path=response.request.url.path,
                              status_code=response.status_code)
            raise UpstreamError(SERVICE_NAME, message=f"unexpected status {response.status_code}",
                                details={"status_code": response.status_code})
        payload = response.json()
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    # Users

    async def create_user(self, data: Dict[str, Any]) -> User:
        response = await self._request("POST", "/api/v1/users", json=_camelize(data))
        if response.status_code == 409:
            raise DomainError(ErrorKind.EMAIL_ALREADY_IN_USE, "Email already in use")
        return User.model_validate(self._unwrap(response))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        response = await self._request("GET", f"/api/v1/users/email/{quote(email, safe='')}", idempotent=True)
        data = self._unwrap(response)
        return User.model_validate(data) if data else None

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        response = await self._request("GET", f"/api/v1/users/{quote(user_id, safe='')}", idempotent=True)
        data = self._unwrap(response)
        return User.model_validate(data) if data else None

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> User:
        response = await self._request("PUT", f"/api/v1/users/{quote(user_id, safe='')}", json=_camelize(changes))
        data = self._unwrap(response)
        if data is None:
            raise DomainError(ErrorKind.USER_NOT_FOUND, "User not found")
        return User.model_validate(data)

    async def verify_password(self, user_id: str, password: str) -> bool:
        response = await self._request(
            "POST",
            f"/api/v1/users/{quote(user_id, safe='')}/verify-password",
            json={"password": password},
            idempotent=True
        )
        data = self._unwrap(response)
        return bool(data and data.get("isValid"))

    # OAuth clients

    async def create_client(self, data: Dict[str, Any]) -> OAuthClient:
        response = await self._request("POST", "/api/v1/clients", json=_camelize(data))
        return OAuthClient.model_validate(self._unwrap(response))

    async def get_client_by_client_id(self, client_id: str) -> Optional[OAuthClient]:
        response = await self._request(
            "GET", f"/api/v1/clients/by-client-id/{quote(client_id, safe='')}", idempotent=True
        )
        data = self._unwrap(response)
        return OAuthClient.model_validate(data) if data else None

    # Signing keys

    async def create_key_pair(self, key_pair: KeyPair) -> KeyPair:
        response = await self._request("POST", "/api/v1/keys", json=key_pair.to_store(exclude_none=True))
        return KeyPair.model_validate(self._unwrap(response))

    async def get_key_pair_by_kid(self, kid: str) -> Optional[KeyPair]:
        response = await self._request("GET", f"/api/v1/keys/kid/{quote(kid, safe='')}", idempotent=True)
        data = self._unwrap(response)
        return KeyPair.model_validate(data) if data else None

    async def get_active_key_pair(self) -> Optional[KeyPair]:
        response = await self._request("GET", "/api/v1/keys/active", idempotent=True)
        data = self._unwrap(response)
        return KeyPair.model_validate(data) if data else None

    async def get_active_key_pairs_as_jwks(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/api/v1/keys/jwks", idempotent=True)
        data = self._unwrap(response)
        if data is None:
            return []
        if isinstance(data, dict):
            return list(data.get("keys", []))
        return list(data)

    # Refresh tokens

    async def create_refresh_token(self, token: str, user_id: str, client_id: Optional[str],
                                   expires_at: datetime) -> RefreshTokenRecord:
        record = RefreshTokenRecord(token=token, user_id=user_id, client_id=client_id, expires_at=expires_at)
        response = await self._request("POST", "/api/v1/refresh-tokens", json=record.to_store(exclude_none=True))
        return RefreshTokenRecord.model_validate(self._unwrap(response))

    async def get_refresh_token_by_value(self, token: str) -> Optional[RefreshTokenRecord]:
        response = await self._request(
            "GET", f"/api/v1/refresh-tokens/by-token/{quote(token, safe='')}", idempotent=True
        )
        data = self._unwrap(response)
        return RefreshTokenRecord.model_validate(data) if data else None

    async def revoke_refresh_token_by_value(self, token: str) -> RevocationOutcome:
        """Conditional revoke; ``was_active`` is true only for the call that revoked it."""
        response = await self._request("POST", "/api/v1/refresh-tokens/revoke-by-token", json={"token": token})
        data = self._unwrap(response)
        if data is None:
            return RevocationOutcome(found=False)
        if isinstance(data, dict):
            return RevocationOutcome(found=True, was_active=bool(data.get("wasActive", True)))
        return RevocationOutcome(found=True, was_active=True)

    async def revoke_all_user_refresh_tokens(self, user_id: str) -> int:
        response = await self._request(
            "POST", f"/api/v1/refresh-tokens/user/{quote(user_id, safe='')}/revoke-all"
        )
        data = self._unwrap(response)
        if isinstance(data, dict):
            return int(data.get("count", 0))
        return 0

    async def health_check(self) -> bool:
        try:
            response = await self._guarded_send("GET", "/health")
        except UpstreamError:
            return False
        return response.status_code == 200
