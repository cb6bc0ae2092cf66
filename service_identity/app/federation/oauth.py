"""
Generic OAuth2 authorization-code flow (Google, GitHub).
"""

from typing import Dict, Any, Optional
from urllib.parse import urlencode

import httpx

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind, IdentityError, UpstreamError
from ..models import AuthorizationRequest, FederatedIdentity, FederatedLoginResult
from .providers import OAuth2Provider
from .state import OAuthStateStore
from .sync import FederatedSessionIssuer


def provider_call_error(provider: str, exc: httpx.HTTPError) -> IdentityError:
    """Map a failed provider call onto the error channel."""
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(provider, ErrorKind.TIMEOUT, "request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        if status_code < 500:
            return DomainError(ErrorKind.OAUTH_ERROR, f"{provider} rejected the request",
                               details={"provider": provider, "status_code": status_code})
        return UpstreamError(provider, message=f"unexpected status {status_code}")
    return UpstreamError(provider, message="request failed")


class GenericOAuthAdapter:
    """Login through a registered OAuth2 provider."""

    def __init__(self,
                 providers: Dict[str, OAuth2Provider],
                 states: OAuthStateStore,
                 sessions: FederatedSessionIssuer,
                 redirect_base: str,
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.providers = providers
        self.states = states
        self.sessions = sessions
        self.redirect_base = redirect_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("identity.federation.oauth")

    def get_provider(self, name: str) -> OAuth2Provider:
        provider = self.providers.get(name)
        if provider is None or not provider.configured:
            raise DomainError(ErrorKind.PROVIDER_NOT_CONFIGURED, f"Provider {name} is not configured",
                              details={"provider": name})
        return provider

    def redirect_uri(self, provider: str) -> str:
        return f"{self.redirect_base}/auth/callback/{provider}"

    def providers_status(self) -> Dict[str, Dict[str, bool]]:
        return {name: {"configured": provider.configured} for name, provider in self.providers.items()}

    def build_authorization_url(self, provider: str, state: str) -> str:
        config = self.get_provider(provider)
        params = config.authorization_params(self.redirect_uri(provider), state)
        return f"{config.authorize_url}?{urlencode(params)}"

    async def start(self, provider: str) -> AuthorizationRequest:
        """Issue a server-held state and the matching authorization URL."""
        self.get_provider(provider)
        state = await self.states.issue(provider)
        return AuthorizationRequest(url=self.build_authorization_url(provider, state), state=state)

    async def exchange_code(self, provider: str, code: str, redirect_uri: str) -> Dict[str, Any]:
        """Exchange an authorization code for the provider's tokens."""
        config = self.get_provider(provider)
        try:
            async with self._client() as client:
                response = await client.post(
                    config.token_url,
                    data={
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers=config.token_request_headers()
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            self.logger.error("Code exchange failed", provider=provider, error=str(e))
            raise provider_call_error(provider, e) from e

        if payload.get("error") or not payload.get("access_token"):
            self.logger.warning("Code exchange refused", provider=provider, error=payload.get("error"))
            raise DomainError(ErrorKind.OAUTH_ERROR, f"{provider} refused the authorization code",
                              details={"provider": provider, "error": payload.get("error")})
        return payload

    async def fetch_user_info(self, provider: str, access_token: str) -> FederatedIdentity:
        """Fetch and normalize the provider profile behind ``access_token``."""
        config = self.get_provider(provider)
        try:
            async with self._client() as client:
                raw = await config.fetch_profile(client, access_token)
        except httpx.HTTPError as e:
            self.logger.error("Profile fetch failed", provider=provider, error=str(e))
            raise provider_call_error(provider, e) from e

        identity = config.normalize(raw)
        if not identity.email:
            raise DomainError(ErrorKind.EMAIL_REQUIRED, "Email required for authentication",
                              details={"provider": provider})
        return identity

    async def complete(self, provider: str, code: Optional[str], state: Optional[str],
                       error: Optional[str] = None) -> FederatedLoginResult:
        """Handle the provider callback and issue local tokens."""
        self.get_provider(provider)
        if error:
            raise DomainError(ErrorKind.OAUTH_ERROR, f"{provider} returned an error",
                              details={"provider": provider, "error": error})
        if not code:
            raise DomainError(ErrorKind.MISSING_AUTH_CODE, "Missing authorization code")
        await self.states.consume(provider, state)

        tokens = await self.exchange_code(provider, code, self.redirect_uri(provider))
        identity = await self.fetch_user_info(provider, tokens["access_token"])
        return await self.sessions.login(identity)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
