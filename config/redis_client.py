"""
config/redis_client.py
Async Redis client for response caching (version-counter invalidation),
the JWT deny-list, and rate limiting.
"""

import json
import logging
from typing import Any, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    try:
        await redis_client.ping()
    except RedisError as e:
        # The cache is an optimization; the API still serves from the database.
        logger.warning(f"Redis unavailable at startup: {e}")


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """
    Versioned response cache.

    Every cacheable read for a logical scope lives under
    ``{scope}:{entity_id}:v:{version}[:{variant}]``. The counter itself is
    stored at ``{scope}:{entity_id}:v`` and reads as 1 when absent. Writers
    call ``bump_version`` after committing, which makes every previously
    cached variant for that scope unreachable; the TTL reclaims them.

    Cache calls never raise: a Redis failure is logged and the caller falls
    through to the database.
    """

    DEFAULT_VERSION = 1

    def __init__(self, client: aioredis.Redis, ttl: int = settings.REDIS_CACHE_TTL):
        self.client = client
        self.ttl = ttl

    @staticmethod
    def version_key(scope: str, entity_id: Any) -> str:
        return f"{scope}:{entity_id}:v"

    async def get_version(self, scope: str, entity_id: Any) -> int:
        try:
            value = await self.client.get(self.version_key(scope, entity_id))
        except RedisError as e:
            logger.warning(f"Cache version read failed for {scope}:{entity_id}: {e}")
            return self.DEFAULT_VERSION
        return int(value) if value else self.DEFAULT_VERSION

    async def bump_version(self, scope: str, entity_id: Any) -> Optional[int]:
        """
        Atomically advance the scope's version. An absent counter is seeded
        with the default first, so the first bump always moves 1 -> 2.
        """
        key = self.version_key(scope, entity_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(key, self.DEFAULT_VERSION, nx=True)
            pipe.incr(key)
            results = await pipe.execute()
        except RedisError as e:
            logger.warning(f"Cache version bump failed for {key}: {e}")
            return None
        return int(results[1])

    async def versioned_key(self, scope: str, entity_id: Any, variant: str = "") -> str:
        version = await self.get_version(scope, entity_id)
        key = f"{scope}:{entity_id}:v:{version}"
        return f"{key}:{variant}" if variant else key

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.client.setex(key, ttl or self.ttl, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    # ── JWT Deny List ─────────────────────────────────────────
    async def is_token_revoked(self, jti: str) -> bool:
        """
        Fails open: with Redis down a revoked token stays usable until it
        expires, rather than every authenticated request failing.
        """
        try:
            return await self.client.exists(f"jwt_revoked:{jti}") == 1
        except RedisError as e:
            logger.error(f"Token deny-list check failed for {jti}: {e}")
            return False

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed-window rate limiter (window restarts on every hit).
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
