"""
Key directory: the active signing key and historical keys by kid.
"""

import asyncio
import time
from typing import Dict, Any, List, Optional

from shared.logging import get_logger
from shared.errors import ErrorKind, IdentityError
from ..adapters.cache import RedisCache
from ..adapters.record_store import RecordStoreClient
from ..models import KeyPair
from .generator import generate_key_pair, public_jwk, sanitize_jwk

JWKS_CACHE_KEY = "jwks"


class KeyDirectory:
    """Fetches and caches signing keys from the record store.

    The active key is memoized for ``active_key_ttl`` seconds and dropped on
    rotation. Keys resolved by kid are cached without their private half;
    they never change once created.
    """

    def __init__(self,
                 store: RecordStoreClient,
                 algorithm: str = "RS256",
                 active_key_ttl: float = 60.0,
                 auto_create: bool = True,
                 cache: Optional[RedisCache] = None,
                 jwks_cache_ttl: int = 300):
        self.store = store
        self.algorithm = algorithm
        self.active_key_ttl = active_key_ttl
        self.auto_create = auto_create
        self.cache = cache
        self.jwks_cache_ttl = jwks_cache_ttl
        self.logger = get_logger("identity.keys")

        self._active: Optional[KeyPair] = None
        self._active_expires_at = 0.0
        self._keys: Dict[str, KeyPair] = {}
        self._lock = asyncio.Lock()

    def _active_is_fresh(self) -> bool:
        return self._active is not None and time.monotonic() < self._active_expires_at

    async def get_active_key(self) -> KeyPair:
        """Return the ACTIVE key pair, creating one when none exists."""
        if self._active_is_fresh():
            return self._active

        async with self._lock:
            if self._active_is_fresh():
                return self._active

            key_pair = await self.store.get_active_key_pair()
            if key_pair is None:
                if not self.auto_create:
                    raise IdentityError(ErrorKind.INTERNAL_ERROR, "No active signing key")
                self.logger.warning("No active signing key found, creating one")
                key_pair = await self.store.create_key_pair(generate_key_pair(self.algorithm))
                await self._drop_cached_jwks()

            if not key_pair.private_key:
                raise IdentityError(ErrorKind.INTERNAL_ERROR, "Active signing key has no private material")

            self._set_active(key_pair)
            return key_pair

    async def get_key(self, kid: str) -> Optional[KeyPair]:
        """Resolve a key by identifier; retired keys remain resolvable."""
        cached = self._keys.get(kid)
        if cached is not None:
            return cached

        key_pair = await self.store.get_key_pair_by_kid(kid)
        if key_pair is None:
            self.logger.info("Unknown signing key", kid=kid)
            return None

        self._remember(key_pair)
        return self._keys[kid]

    async def rotate(self) -> KeyPair:
        """Create a new ACTIVE key; the store retires the previous one."""
        async with self._lock:
            key_pair = await self.store.create_key_pair(generate_key_pair(self.algorithm))
            self._set_active(key_pair)
        await self._drop_cached_jwks()
        self.logger.info("Signing key rotated", kid=key_pair.kid)
        return key_pair

    def invalidate(self):
        """Forget the memoized active key."""
        self._active = None
        self._active_expires_at = 0.0

    async def get_jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        """Public key set document. Private members are never included."""
        if self.cache is not None:
            cached = await self.cache.get_json(JWKS_CACHE_KEY)
            if cached is not None:
                return {"keys": [sanitize_jwk(key) for key in cached.get("keys", [])]}

        keys = []
        for entry in await self.store.get_active_key_pairs_as_jwks():
            if "kty" in entry:
                keys.append(sanitize_jwk(entry))
            elif entry.get("publicKey"):
                keys.append(public_jwk(KeyPair.model_validate(entry)))

        document = {"keys": keys}
        if self.cache is not None:
            await self.cache.set_json(JWKS_CACHE_KEY, document, self.jwks_cache_ttl)
        return document

    def _set_active(self, key_pair: KeyPair):
        self._active = key_pair
        self._active_expires_at = time.monotonic() + self.active_key_ttl
        self._remember(key_pair)

    def _remember(self, key_pair: KeyPair):
        self._keys[key_pair.kid] = key_pair.model_copy(update={"private_key": None})

    async def _drop_cached_jwks(self):
        if self.cache is not None:
            await self.cache.delete(JWKS_CACHE_KEY)
