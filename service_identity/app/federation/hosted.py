"""
Hosted identity platform (Auth0-style) integration.

Tokens from the platform are verified against the platform's own published
key set, never against this service's keys. Only this service's tokens are
handed back to callers.
"""

import asyncio
import time
from typing import Dict, Any, Awaitable, Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

import httpx
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind, UpstreamError
from ..models import AuthorizationRequest, FederatedIdentity, FederatedLoginResult
from .oauth import provider_call_error
from .providers import HostedPlatformProvider
from .state import OAuthStateStore
from .sync import FederatedSessionIssuer

PROVIDER_NAME = "hosted"
DEFAULT_SCOPES = ("openid", "profile", "email")
DEFAULT_CONNECTION = "Username-Password-Authentication"


class ManagementTokenCache:
    """Memoized management credential with single-flight refresh.

    The credential is reused until ``margin_seconds`` before it expires.
    Concurrent callers that find it stale wait on one refresh.
    """

    def __init__(self,
                 fetch: Callable[[], Awaitable[Tuple[str, int]]],
                 margin_seconds: int = 300,
                 clock: Callable[[], float] = time.monotonic):
        self._fetch = fetch
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._refresh_at = 0.0
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._refresh_at

    async def get(self) -> str:
        if self._is_fresh():
            return self._token

        async with self._lock:
            if self._is_fresh():
                return self._token
            token, expires_in = await self._fetch()
            self._token = token
            self._refresh_at = self._clock() + expires_in - self.margin_seconds
            return token

    def invalidate(self):
        self._token = None
        self._refresh_at = 0.0


class HostedIdentityAdapter:
    """Login and user management through the hosted identity platform."""

    def __init__(self,
                 domain: Optional[str],
                 client_id: Optional[str],
                 client_secret: Optional[str],
                 states: OAuthStateStore,
                 sessions: FederatedSessionIssuer,
                 redirect_base: str,
                 audience: Optional[str] = None,
                 management_audience: Optional[str] = None,
                 management_token_margin: int = 300,
                 jwks_cache_ttl: int = 300,
                 jwks_refresh_cooldown: float = 30.0,
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.domain = domain
        self.client_id = client_id
        self.client_secret = client_secret
        self.audience = audience
        self.states = states
        self.sessions = sessions
        self.redirect_base = redirect_base.rstrip("/")
        self.jwks_cache_ttl = jwks_cache_ttl
        self.jwks_refresh_cooldown = jwks_refresh_cooldown
        self.timeout = timeout
        self._transport = transport
        self.provider = HostedPlatformProvider()
        self.logger = get_logger("identity.federation.hosted")

        self.base_url = f"https://{domain}" if domain else ""
        self.issuer = f"{self.base_url}/"
        self.management_audience = management_audience or f"{self.base_url}/api/v2/"
        self.management_tokens = ManagementTokenCache(self._fetch_management_token, management_token_margin)

        self._keys: Optional[List[Dict[str, Any]]] = None
        self._keys_fetched_at = 0.0
        self._forced_refresh_at: Optional[float] = None
        self._keys_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config, states: OAuthStateStore, sessions: FederatedSessionIssuer,
                    **kwargs) -> "HostedIdentityAdapter":
        return cls(
            domain=config.hosted_domain,
            client_id=config.hosted_client_id,
            client_secret=config.hosted_client_secret,
            states=states,
            sessions=sessions,
            redirect_base=config.redirect_base,
            audience=config.hosted_audience,
            management_audience=config.hosted_management_audience,
            management_token_margin=config.management_token_margin,
            jwks_cache_ttl=config.jwks_cache_ttl,
            jwks_refresh_cooldown=config.hosted_jwks_refresh_cooldown,
            timeout=config.provider_timeout,
            **kwargs
        )

    @property
    def configured(self) -> bool:
        return bool(self.domain and self.client_id and self.client_secret)

    def _require_configured(self):
        if not self.configured:
            raise DomainError(ErrorKind.PROVIDER_NOT_CONFIGURED, "Hosted identity platform is not configured",
                              details={"provider": PROVIDER_NAME})

    def redirect_uri(self) -> str:
        return f"{self.redirect_base}/auth/callback/{PROVIDER_NAME}"

    # Authorization code flow

    def build_authorization_url(self, state: str, redirect_uri: Optional[str] = None,
                                scopes: Sequence[str] = DEFAULT_SCOPES) -> str:
        self._require_configured()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri or self.redirect_uri(),
            "scope": " ".join(scopes),
            "state": state,
        }
        if self.audience:
            params["audience"] = self.audience
        return f"{self.base_url}/authorize?{urlencode(params)}"

    async def start(self) -> AuthorizationRequest:
        self._require_configured()
        state = await self.states.issue(PROVIDER_NAME)
        return AuthorizationRequest(url=self.build_authorization_url(state), state=state)

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> Dict[str, Any]:
        self._require_configured()
        payload = await self._post_json("/oauth/token", {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri or self.redirect_uri(),
        })
        if not payload.get("access_token"):
            raise DomainError(ErrorKind.OAUTH_ERROR, "Hosted platform returned no access token")
        return payload

    async def complete(self, code: Optional[str], state: Optional[str],
                       error: Optional[str] = None) -> FederatedLoginResult:
        """Handle the platform callback and issue local tokens."""
        self._require_configured()
        if error:
            raise DomainError(ErrorKind.OAUTH_ERROR, "Hosted platform returned an error",
                              details={"provider": PROVIDER_NAME, "error": error})
        if not code:
            raise DomainError(ErrorKind.MISSING_AUTH_CODE, "Missing authorization code")
        await self.states.consume(PROVIDER_NAME, state)

        tokens = await self.exchange_code(code)
        if self.audience:
            await self.verify_token(tokens["access_token"])
        elif tokens.get("id_token"):
            await self.verify_token(tokens["id_token"], audience=self.client_id)
        else:
            raise DomainError(ErrorKind.OAUTH_ERROR, "Hosted platform returned no verifiable token")

        identity = await self.fetch_user_info(tokens["access_token"])
        return await self.sessions.login(identity)

    async def login_with_token(self, access_token: str) -> FederatedLoginResult:
        """Trade a platform access token for local tokens."""
        self._require_configured()
        claims = await self.verify_token(access_token)
        identity = await self.fetch_user_info(access_token)
        if identity.provider_id and identity.provider_id != claims.get("sub"):
            raise DomainError(ErrorKind.TOKEN_INVALID, "Profile does not belong to token subject")
        return await self.sessions.login(identity)

    # Token verification

    async def verify_token(self, token: str, audience: Optional[str] = None) -> Dict[str, Any]:
        """Verify a platform-issued token against the platform's key set."""
        self._require_configured()
        if not token:
            raise DomainError(ErrorKind.TOKEN_REQUIRED, "Token required")

        audience = audience or self.audience or self.client_id
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Malformed token") from e

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Token header missing key id")

        key = await self._get_signing_key(kid)
        if key is None:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Unknown signing key", details={"kid": kid})

        try:
            return jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=audience,
                issuer=self.issuer,
                options={"verify_at_hash": False},
            )
        except ExpiredSignatureError as e:
            raise DomainError(ErrorKind.TOKEN_EXPIRED, "Token expired") from e
        except JWTError as e:
            self.logger.info("Hosted token verification failed", kid=kid, error=str(e))
            raise DomainError(ErrorKind.TOKEN_INVALID, "Invalid token") from e

    async def _get_signing_key(self, kid: str) -> Optional[Dict[str, Any]]:
        await self._refresh_keys(force=False)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key

        # Key may have been rotated; refresh once per cooldown window.
        if not self._may_force_refresh():
            self.logger.info("Key set refresh skipped during cooldown", kid=kid)
            return None
        await self._refresh_keys(force=True)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        return None

    def _keys_are_fresh(self) -> bool:
        return self._keys is not None and (time.monotonic() - self._keys_fetched_at) < self.jwks_cache_ttl

    def _may_force_refresh(self) -> bool:
        if self._forced_refresh_at is None:
            return True
        return (time.monotonic() - self._forced_refresh_at) >= self.jwks_refresh_cooldown

    async def _refresh_keys(self, *, force: bool):
        if not force and self._keys_are_fresh():
            return

        async with self._keys_lock:
            if force:
                if not self._may_force_refresh():
                    return
                self._forced_refresh_at = time.monotonic()
            elif self._keys_are_fresh():
                return

            payload = await self._get_json("/.well-known/jwks.json")
            keys = payload.get("keys")
            if not isinstance(keys, list):
                raise UpstreamError(PROVIDER_NAME, message="key set missing 'keys' array")
            self._keys = keys
            self._keys_fetched_at = time.monotonic()

    # Profile

    async def fetch_user_info(self, access_token: str) -> FederatedIdentity:
        payload = await self._get_json("/userinfo", headers={"Authorization": f"Bearer {access_token}"})
        identity = self.provider.normalize(payload)
        if not identity.email:
            raise DomainError(ErrorKind.EMAIL_REQUIRED, "Email required for authentication",
                              details={"provider": PROVIDER_NAME})
        return identity

    # Management API

    async def _fetch_management_token(self) -> Tuple[str, int]:
        payload = await self._post_json("/oauth/token", {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "audience": self.management_audience,
        })
        token = payload.get("access_token")
        if not token:
            raise UpstreamError(PROVIDER_NAME, message="no management token returned")
        self.logger.info("Management token refreshed", expires_in=payload.get("expires_in"))
        return token, int(payload.get("expires_in", 86400))

    async def create_remote_user(self, email: str, password: str,
                                 first_name: Optional[str] = None,
                                 last_name: Optional[str] = None) -> Dict[str, Any]:
        """Create a user on the platform's database connection."""
        self._require_configured()
        token = await self.management_tokens.get()
        body = {
            "email": email,
            "password": password,
            "given_name": first_name,
            "family_name": last_name,
            "connection": DEFAULT_CONNECTION,
            "email_verified": False,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/api/v2/users",
                    json={key: value for key, value in body.items() if value is not None},
                    headers={"Authorization": f"Bearer {token}"}
                )
        except httpx.HTTPError as e:
            self.logger.error("Remote user creation failed", error=str(e))
            raise provider_call_error(PROVIDER_NAME, e) from e

        if response.status_code == 409 or "already exists" in response.text:
            raise DomainError(ErrorKind.EMAIL_ALREADY_IN_USE, "Email already in use")
        if response.status_code == 401:
            self.management_tokens.invalidate()
        if response.status_code >= 400:
            self.logger.error("Remote user creation rejected", status_code=response.status_code)
            raise UpstreamError(PROVIDER_NAME, message=f"unexpected status {response.status_code}")
        return response.json()

    async def delete_remote_user(self, remote_user_id: str) -> bool:
        """Delete a platform user; ``False`` when the platform refuses."""
        self._require_configured()
        token = await self.management_tokens.get()
        try:
            async with self._client() as client:
                response = await client.delete(
                    f"{self.base_url}/api/v2/users/{quote(remote_user_id, safe='')}",
                    headers={"Authorization": f"Bearer {token}"}
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            self.logger.error("Remote user deletion failed", remote_user_id=remote_user_id, error=str(e))
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 401:
                self.management_tokens.invalidate()
            return False
        return True

    # HTTP helpers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_json(self, path: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}{path}", headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            self.logger.error("Hosted platform call failed", path=path, error=str(e))
            raise provider_call_error(PROVIDER_NAME, e) from e

    async def _post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}{path}", json=body)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            self.logger.error("Hosted platform call failed", path=path, error=str(e))
            raise provider_call_error(PROVIDER_NAME, e) from e
