"""
Refresh token lifecycle: issue, verify, rotate, revoke.

Tokens are opaque random values; everything about them lives in the record
store. A token moves ISSUED -> ROTATED or REVOKED and never back.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind
from shared.metrics import MetricsCollector
from ..adapters.record_store import RecordStoreClient
from ..models import RefreshGrant, RefreshTokenRecord, RotatedRefreshToken

TOKEN_BYTES = 64


class RefreshTokenLifecycle:
    """Issues and rotates refresh tokens through the record store."""

    def __init__(self,
                 store: RecordStoreClient,
                 ttl_seconds: int = 7 * 24 * 60 * 60,
                 reuse_revokes_family: bool = True,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.reuse_revokes_family = reuse_revokes_family
        self.metrics = metrics
        self.logger = get_logger("identity.refresh")

    async def issue(self, user_id: str, client_id: Optional[str] = None) -> str:
        token = secrets.token_hex(TOKEN_BYTES)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds)
        await self.store.create_refresh_token(token, user_id, client_id, expires_at)
        return token

    async def verify(self, token: str) -> RefreshGrant:
        record = await self._fetch(token)
        self._check(record)
        return RefreshGrant(user_id=record.user_id, client_id=record.client_id)

    async def rotate(self, token: str) -> RotatedRefreshToken:
        """Exchange ``token`` for a new one. Only one caller can win a given token."""
        try:
            record = await self._fetch(token)
            if record.revoked_at is not None:
                await self._handle_reuse(record.user_id)
            self._check(record)
        except DomainError:
            self._record("rejected")
            raise

        new_token = await self.issue(record.user_id, record.client_id)
        outcome = await self.store.revoke_refresh_token_by_value(token)

        if not outcome.was_active:
            # A concurrent rotation revoked the original first.
            await self.store.revoke_refresh_token_by_value(new_token)
            self.logger.warning("Concurrent refresh token rotation rejected", user_id=record.user_id)
            self._record("conflict")
            raise DomainError(ErrorKind.TOKEN_INVALID, "Refresh token already used")

        self._record("rotated")
        return RotatedRefreshToken(user_id=record.user_id, client_id=record.client_id, token=new_token)

    async def revoke(self, token: str) -> bool:
        """Revoke ``token``. Revoking an already revoked token still succeeds."""
        if not token:
            return False
        outcome = await self.store.revoke_refresh_token_by_value(token)
        return outcome.found

    async def _fetch(self, token: str) -> RefreshTokenRecord:
        if not token:
            raise DomainError(ErrorKind.TOKEN_REQUIRED, "Refresh token required")
        record = await self.store.get_refresh_token_by_value(token)
        if record is None:
            raise DomainError(ErrorKind.INVALID_REFRESH_TOKEN, "Invalid refresh token")
        return record

    @staticmethod
    def _check(record: RefreshTokenRecord):
        if record.is_expired():
            raise DomainError(ErrorKind.TOKEN_EXPIRED, "Refresh token expired")
        if record.revoked_at is not None:
            raise DomainError(ErrorKind.TOKEN_INVALID, "Refresh token revoked")

    async def _handle_reuse(self, user_id: str):
        self.logger.warning("Revoked refresh token presented again", user_id=user_id)
        if self.reuse_revokes_family:
            count = await self.store.revoke_all_user_refresh_tokens(user_id)
            self.logger.warning("Revoked all refresh tokens of user", user_id=user_id, count=count)

    def _record(self, outcome: str):
        if self.metrics:
            self.metrics.record_rotation(outcome)
