"""
Registered OAuth client lookups and validation.
"""

import hmac
import secrets
from typing import List, Optional

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind
from ..adapters.record_store import RecordStoreClient
from ..models import OAuthClient

DEFAULT_SCOPES = ["openid", "profile", "email"]


class ClientRegistry:
    """Validates relying clients against their registration."""

    def __init__(self, store: RecordStoreClient):
        self.store = store
        self.logger = get_logger("identity.clients")

    async def register(self,
                       name: str,
                       redirect_uris: List[str],
                       allowed_scopes: Optional[List[str]] = None,
                       owner_id: Optional[str] = None) -> OAuthClient:
        """Register a new client with generated credentials."""
        client = await self.store.create_client({
            "client_id": secrets.token_hex(16),
            "client_secret": secrets.token_urlsafe(32),
            "name": name,
            "redirect_uris": redirect_uris,
            "allowed_scopes": allowed_scopes or list(DEFAULT_SCOPES),
            "owner_id": owner_id,
            "active": True,
        })
        self.logger.info("OAuth client registered", client_id=client.client_id, name=name)
        return client

    async def validate(self,
                       client_id: str,
                       client_secret: Optional[str] = None,
                       redirect_uri: Optional[str] = None,
                       scope: Optional[str] = None) -> OAuthClient:
        """Return the client when every supplied parameter matches its registration."""
        client = await self.store.get_client_by_client_id(client_id)
        if client is None or not client.active:
            raise DomainError(ErrorKind.CLIENT_NOT_FOUND, "Client not found")

        if client_secret is not None:
            if not client.client_secret or not hmac.compare_digest(client.client_secret, client_secret):
                raise DomainError(ErrorKind.INVALID_CLIENT_CREDENTIALS, "Invalid client credentials")

        if redirect_uri is not None and redirect_uri not in client.redirect_uris:
            raise DomainError(ErrorKind.INVALID_REDIRECT_URI, "Redirect URI not registered for client")

        if scope:
            allowed = set(client.allowed_scopes or DEFAULT_SCOPES)
            unknown = sorted(set(scope.split()) - allowed)
            if unknown:
                raise DomainError(ErrorKind.INVALID_SCOPE, "Scope not allowed for client",
                                  details={"scopes": unknown})

        return client
