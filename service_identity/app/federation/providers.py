"""
External identity providers.

Providers form a closed set of variants behind one interface: each turns
its provider-specific profile into a ``FederatedIdentity``. The generic
OAuth2 providers live in a registry keyed by name; the hosted identity
platform is its own variant.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Tuple

import httpx

from shared.logging import get_logger
from ..models import FederatedIdentity


def split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a display name into given and family names."""
    if not name or not name.strip():
        return None, None
    parts = name.split()
    return parts[0], " ".join(parts[1:]) or None


class IdentityProvider(ABC):
    """A provider whose profiles normalize to ``FederatedIdentity``."""

    name: str

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> FederatedIdentity:
        """Normalize a raw provider profile."""


class OAuth2Provider(IdentityProvider):
    """Authorization-code provider reached through its public endpoints."""

    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str
    extra_authorize_params: Dict[str, str] = {}

    def __init__(self, client_id: Optional[str], client_secret: Optional[str]):
        self.client_id = client_id
        self.client_secret = client_secret
        self.logger = get_logger(f"identity.federation.{self.name}")

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_params(self, redirect_uri: str, state: str) -> Dict[str, str]:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": self.scope,
            "response_type": "code",
            "state": state,
        }
        params.update(self.extra_authorize_params)
        return params

    def token_request_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> Dict[str, Any]:
        """Raw profile for ``access_token``."""
        response = await client.get(self.userinfo_url, headers=self._api_headers(access_token))
        response.raise_for_status()
        return response.json()

    def _api_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "User-Agent": "identity-core",
        }


class GoogleProvider(OAuth2Provider):
    name = "google"
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid profile email"
    extra_authorize_params = {"access_type": "offline", "prompt": "consent"}

    def normalize(self, raw: Dict[str, Any]) -> FederatedIdentity:
        return FederatedIdentity(
            provider=self.name,
            provider_id=str(raw["id"]) if raw.get("id") is not None else None,
            email=raw.get("email"),
            email_verified=bool(raw.get("verified_email", False)),
            first_name=raw.get("given_name"),
            last_name=raw.get("family_name"),
            picture=raw.get("picture"),
        )


class GitHubProvider(OAuth2Provider):
    """GitHub only discloses verified addresses through a second call."""

    name = "github"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "user:email"

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> Dict[str, Any]:
        profile = await super().fetch_profile(client, access_token)
        try:
            response = await client.get(self.emails_url, headers=self._api_headers(access_token))
            response.raise_for_status()
            emails: List[Dict[str, Any]] = response.json()
        except httpx.HTTPError as e:
            self.logger.warning("Could not fetch GitHub emails", error=str(e))
            profile["email_verified"] = False
            return profile

        primary = next((item for item in emails if item.get("primary") and item.get("verified")), None)
        if primary is not None:
            profile["email"] = primary["email"]
            profile["email_verified"] = True
        elif emails:
            profile["email"] = emails[0].get("email")
            profile["email_verified"] = False
        else:
            profile["email_verified"] = False
        return profile

    def normalize(self, raw: Dict[str, Any]) -> FederatedIdentity:
        first_name, last_name = split_name(raw.get("name"))
        return FederatedIdentity(
            provider=self.name,
            provider_id=str(raw["id"]) if raw.get("id") is not None else None,
            email=raw.get("email"),
            email_verified=bool(raw.get("email_verified", False)),
            first_name=first_name,
            last_name=last_name,
            picture=raw.get("avatar_url"),
        )


class HostedPlatformProvider(IdentityProvider):
    """Profiles returned by the hosted identity platform's ``/userinfo``."""

    name = "hosted"

    def normalize(self, raw: Dict[str, Any]) -> FederatedIdentity:
        email = raw.get("email")
        given, family = split_name(raw.get("name"))
        return FederatedIdentity(
            provider=self.name,
            provider_id=raw.get("sub"),
            email=email,
            email_verified=bool(raw.get("email_verified", False)),
            first_name=raw.get("given_name") or given or email,
            last_name=raw.get("family_name") or family or "User",
            picture=raw.get("picture"),
        )


def build_provider_registry(config) -> Dict[str, OAuth2Provider]:
    """Generic OAuth2 providers keyed by name."""
    providers = [
        GoogleProvider(config.google_client_id, config.google_client_secret),
        GitHubProvider(config.github_client_id, config.github_client_secret),
    ]
    return {provider.name: provider for provider in providers}
