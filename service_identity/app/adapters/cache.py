"""
Opportunistic Redis cache for the Identity service.

Every operation degrades to a miss when Redis is unavailable; nothing in
the service depends on a cached value for correctness.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger


class RedisCache:
    """Small JSON cache on top of Redis."""

    PREFIX = "identity:"

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.logger = get_logger("identity.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Connect to Redis; a failed ping leaves the cache disabled."""
        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await self.redis.ping()
            self.logger.info("Redis cache started")
        except RedisError as e:
            self.logger.warning("Redis unavailable, cache disabled", error=str(e))
            await self.redis.aclose()
            self.redis = None

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    async def get_json(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self.PREFIX + key)
        except RedisError as e:
            self.logger.warning("Cache read failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            self.logger.warning("Discarding undecodable cache entry", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.set(self.PREFIX + key, json.dumps(value), ex=ttl_seconds)
            return True
        except RedisError as e:
            self.logger.warning("Cache write failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.delete(self.PREFIX + key)
            return True
        except RedisError as e:
            self.logger.warning("Cache delete failed", key=key, error=str(e))
            return False
