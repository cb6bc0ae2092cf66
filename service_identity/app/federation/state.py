"""
Server-held OAuth state values.

A state is issued for one provider, expires after ``ttl_seconds`` and can be
consumed once. It must be consumed before any authorization code is
exchanged.
"""

import asyncio
import secrets
import time
from typing import Dict, Tuple

from shared.logging import get_logger
from shared.errors import DomainError, ErrorKind


class OAuthStateStore:
    """In-process store of pending authorization attempts."""

    def __init__(self, ttl_seconds: int = 600, max_pending: int = 10000):
        self.ttl_seconds = ttl_seconds
        self.max_pending = max(1, max_pending)
        self.logger = get_logger("identity.federation.state")
        self._states: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def issue(self, provider: str) -> str:
        state = secrets.token_hex(16)
        async with self._lock:
            self._purge_expired()
            if len(self._states) >= self.max_pending:
                # Insertion order is issue order; evict the oldest.
                evicted = len(self._states) - self.max_pending + 1
                for stale in list(self._states)[:evicted]:
                    del self._states[stale]
                self.logger.warning("OAuth state store full, oldest states evicted", evicted=evicted)
            self._states[state] = (provider, time.monotonic() + self.ttl_seconds)
        return state

    async def consume(self, provider: str, state: str):
        """Validate and discard ``state``; raises ``INVALID_OAUTH_STATE``."""
        if not state:
            raise DomainError(ErrorKind.INVALID_OAUTH_STATE, "Missing OAuth state")

        async with self._lock:
            stored = self._states.pop(state, None)

        if stored is None:
            self.logger.warning("Unknown or reused OAuth state", provider=provider)
            raise DomainError(ErrorKind.INVALID_OAUTH_STATE, "Invalid OAuth state")

        stored_provider, expires_at = stored
        if time.monotonic() >= expires_at:
            raise DomainError(ErrorKind.INVALID_OAUTH_STATE, "OAuth state expired")
        if stored_provider != provider:
            self.logger.warning("OAuth state used with another provider",
                                expected=stored_provider, provider=provider)
            raise DomainError(ErrorKind.INVALID_OAUTH_STATE, "OAuth state does not match provider")

    def __len__(self) -> int:
        return len(self._states)

    def _purge_expired(self):
        now = time.monotonic()
        for state in [key for key, (_, expires_at) in self._states.items() if expires_at <= now]:
            del self._states[state]
