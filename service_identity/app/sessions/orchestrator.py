"""
Credential session orchestrator.

Registration, password login, refresh exchange, logout, email verification
and the "who am I" projection, composed from the token service and the
refresh token lifecycle.
"""

import asyncio
from typing import Dict, Any, Awaitable, Optional, Set
from urllib.parse import quote

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind, IdentityError
from shared.metrics import MetricsCollector
from ..adapters.notifications import NotificationClient
from ..adapters.record_store import RecordStoreClient
from ..models import (
    EmailVerificationResult,
    RevocationResult,
    SessionTokens,
    User,
    UserProfile,
)
from ..privacy import DataProcessingLog
from ..tokens.refresh import RefreshTokenLifecycle
from ..tokens.service import TokenService
from .clients import ClientRegistry

DEFAULT_DISPLAY_NAME = "new user"


class SessionOrchestrator:
    """Password-based session flows."""

    def __init__(self,
                 store: RecordStoreClient,
                 tokens: TokenService,
                 refresh_tokens: RefreshTokenLifecycle,
                 notifications: NotificationClient,
                 frontend_url: str,
                 clients: Optional[ClientRegistry] = None,
                 privacy: Optional[DataProcessingLog] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.notifications = notifications
        self.frontend_url = frontend_url.rstrip("/")
        self.clients = clients or ClientRegistry(store)
        self.privacy = privacy or DataProcessingLog()
        self.metrics = metrics
        self.logger = get_logger("identity.sessions")
        self._pending: Set[asyncio.Task] = set()

    async def register(self, email: str, password: str, profile: Optional[UserProfile] = None) -> User:
        """Create a local account and send its confirmation email."""
        if await self.store.get_user_by_email(email) is not None:
            raise DomainError(ErrorKind.EMAIL_ALREADY_IN_USE, "Email already in use")

        profile = profile or UserProfile()
        user = await self.store.create_user({
            "email": email,
            "password": password,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "picture": profile.picture,
            "roles": ["USER"],
            "email_verified": False,
        })

        token = await self.tokens.issue_email_verification_token(user)
        link = f"{self.frontend_url}/auth/verify-email?token={quote(token)}"
        self._dispatch(self.notifications.send_confirmation_email(
            user.email, user.first_name or DEFAULT_DISPLAY_NAME, link
        ))

        self.privacy.record(user.id, "registration", "account", "collection", "contract")
        if self.metrics:
            self.metrics.record_registration()
        self.logger.info("User registered", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> SessionTokens:
        """Authenticate with email and password."""
        user = await self.store.get_user_by_email(email)
        if user is None or not await self.store.verify_password(user.id, password):
            self._record_attempt("failure")
            raise DomainError(ErrorKind.INVALID_CREDENTIALS, "Invalid email or password")

        if not user.active:
            self._record_attempt("inactive")
            raise DomainError(ErrorKind.UNAUTHORIZED, "Account is deactivated")

        access_token = await self.tokens.issue_access_token(user)
        refresh_token = await self.refresh_tokens.issue(user.id)
        self._record_attempt("success")
        self.logger.info("User logged in", user_id=user.id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_token_ttl,
            user=user,
        )

    async def refresh(self, refresh_token: str) -> SessionTokens:
        """Exchange a refresh token for a new access token and refresh token."""
        rotated = await self.refresh_tokens.rotate(refresh_token)

        user = await self.store.get_user_by_id(rotated.user_id)
        if user is None or not user.active:
            await self.refresh_tokens.revoke(rotated.token)
            raise DomainError(ErrorKind.UNAUTHORIZED, "User not found or deactivated")

        access_token = await self.tokens.issue_access_token(user)
        return SessionTokens(
            access_token=access_token,
            refresh_token=rotated.token,
            expires_in=self.tokens.access_token_ttl,
        )

    async def revoke_session(self, refresh_token: str) -> RevocationResult:
        """Log out. Always answers with a result, never raises."""
        try:
            revoked = await self.refresh_tokens.revoke(refresh_token)
        except IdentityError as e:
            self.logger.error("Failed to revoke refresh token", code=e.code, error=e.message)
            return RevocationResult(success=False, message="Could not revoke refresh token")

        if revoked:
            return RevocationResult(success=True, message="Refresh token revoked")
        return RevocationResult(success=False, message="Refresh token not found")

    async def verify_email(self, token: str) -> EmailVerificationResult:
        """Mark the token's user as having a verified email."""
        claims = await self.tokens.verify_email_verification_token(token)

        user = await self.store.get_user_by_id(claims["sub"])
        if user is None:
            raise DomainError(ErrorKind.USER_NOT_FOUND, "User not found")

        if user.email_verified:
            return EmailVerificationResult(user=user, already_verified=True, message="Email already verified")

        user = await self.store.update_user(user.id, {"email_verified": True})
        self.privacy.record(user.id, "email_verification", "email", "update", "contract")
        self.logger.info("Email verified", user_id=user.id)
        return EmailVerificationResult(user=user, message="Email verified")

    async def user_info(self, user_id: str) -> Dict[str, Any]:
        """Standard identity claims for a user."""
        user = await self.store.get_user_by_id(user_id)
        if user is None:
            raise DomainError(ErrorKind.USER_NOT_FOUND, "User not found")

        return {
            "sub": user.id,
            "email": user.email,
            "email_verified": user.email_verified,
            "name": user.display_name,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "picture": user.picture,
            "updated_at": int(user.updated_at.timestamp()) if user.updated_at else None,
        }

    async def authorize_client_session(self,
                                       user_id: str,
                                       client_id: str,
                                       client_secret: Optional[str] = None,
                                       redirect_uri: Optional[str] = None,
                                       scope: Optional[str] = None,
                                       nonce: Optional[str] = None) -> SessionTokens:
        """Issue tokens for a user on behalf of a registered relying client."""
        client = await self.clients.validate(client_id, client_secret, redirect_uri, scope)

        user = await self.store.get_user_by_id(user_id)
        if user is None:
            raise DomainError(ErrorKind.USER_NOT_FOUND, "User not found")
        if not user.active:
            raise DomainError(ErrorKind.UNAUTHORIZED, "Account is deactivated")

        return SessionTokens(
            access_token=await self.tokens.issue_access_token(user),
            refresh_token=await self.refresh_tokens.issue(user.id, client.client_id),
            id_token=await self.tokens.issue_id_token(user, client.client_id, nonce),
            expires_in=self.tokens.access_token_ttl,
        )

    async def wait_for_notifications(self):
        """Wait for pending confirmation emails to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def _dispatch(self, send: Awaitable[bool]):
        task = asyncio.create_task(self._deliver(send))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, send: Awaitable[bool]):
        try:
            await send
        except Exception as e:
            self.logger.error("Confirmation email dispatch failed", error=str(e))

    def _record_attempt(self, outcome: str):
        if self.metrics:
            self.metrics.record_auth_attempt("password", outcome)
