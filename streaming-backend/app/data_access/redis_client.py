# Redis connection and caching logic
# backend/app/data_access/redis_client.py

import json
import logging
import math
import secrets
import time
from typing import Optional, Any, Dict, List, NamedTuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

HTTP_CACHE_PREFIX = "http-cache:"
RATE_LIMIT_PREFIX = "rate-limit:"


class CacheRepository:
    """
    Provides structured access to Redis for caching operations.
    Assumes a configured redis.Redis client instance is provided.
    """
    def __init__(self, client: redis.Redis):
        self.client = client
        logger.debug("Initialized CacheRepository.")

    def _check_client(self):
        """Helper to check if Redis client is available."""
        if self.client is None:
            logger.critical("Redis client not available.")
            raise ConnectionError("Redis client connection not available.")

    async def get(self, key: str) -> Optional[Any]:
        """Gets a value from cache, attempting to deserialize JSON if possible."""
        self._check_client()
        try:
            value = await self.client.get(key)
            if value is None:
                logger.debug(f"Cache miss for key: {key}")
                return None

            logger.debug(f"Cache hit for key: {key}")
            try:
                if isinstance(value, str) and value.startswith(('[', '{')):
                    return json.loads(value)
                return value
            except json.JSONDecodeError:
                logger.warning(f"Failed to decode JSON from cache key {key}. Returning raw value.")
                return value
        except RedisError as e:
            logger.error(f"Redis GET error for key {key}: {e}", exc_info=True)
            # Treat cache error as a cache miss
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Sets a value in cache, serializing complex types to JSON."""
        self._check_client()
        try:
            if isinstance(value, (list, dict)):
                value_to_set = json.dumps(value, default=str)
            elif isinstance(value, (int, float, bytes, str)):
                value_to_set = value
            else:
                logger.warning(f"Attempting to cache non-standard type {type(value)} for key {key}. Converting to string.")
                value_to_set = str(value)

            logger.debug(f"Setting cache for key: {key} with TTL: {ttl_seconds}s")
            await self.client.set(key, value_to_set, ex=ttl_seconds)
            return True
        except RedisError as e:
            logger.error(f"Redis SET error for key {key}: {e}", exc_info=True)
            return False

    async def delete(self, key: str) -> bool:
        """Deletes a key from the cache."""
        self._check_client()
        try:
            deleted_count = await self.client.delete(key)
            logger.debug(f"Deleted {deleted_count} keys for: {key}")
            return deleted_count > 0
        except RedisError as e:
            logger.error(f"Redis DELETE error for key {key}: {e}", exc_info=True)
            return False

    async def delete_by_prefix(self, prefix: str) -> bool:
        """Deletes all keys matching a given prefix (Use with caution!)."""
        self._check_client()
        deleted_count = 0
        try:
            # SCAN is preferred over KEYS in production to avoid blocking
            async for key in self.client.scan_iter(match=f"{prefix}*"):
                await self.client.delete(key)
                deleted_count += 1
            logger.info(f"Deleted {deleted_count} keys matching prefix: {prefix}")
            return deleted_count > 0
        except RedisError as e:
            logger.error(f"Redis error deleting by prefix {prefix}: {e}", exc_info=True)
            return False


class HttpCacheRepository(CacheRepository):
    """
    Stores conditional-request cache entries for outbound HTTP calls.

    An entry is keyed by request URL and holds
    ``{"data", "etag", "lastModified", "timestamp"}``.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 3600):
        super().__init__(client)
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(url: str) -> str:
        return f"{HTTP_CACHE_PREFIX}{url}"

    async def get_entry(self, url: str) -> Optional[Dict[str, Any]]:
        entry = await self.get(self._key(url))
        return entry if isinstance(entry, dict) else None

    async def set_entry(self, url: str, entry: Dict[str, Any]) -> bool:
        return await self.set(self._key(url), entry, ttl_seconds=self.ttl_seconds)

    async def clear_entry(self, url: str) -> bool:
        return await self.delete(self._key(url))

    async def get_entries(self, urls: List[str]) -> Dict[str, Optional[Dict[str, Any]]]:
        """Fetches several entries with one round trip. Misses map to None."""
        self._check_client()
        if not urls:
            return {}
        try:
            values = await self.client.mget([self._key(u) for u in urls])
        except RedisError as e:
            logger.error(f"Redis MGET error for {len(urls)} http cache keys: {e}", exc_info=True)
            return {u: None for u in urls}

        entries: Dict[str, Optional[Dict[str, Any]]] = {}
        for url, raw in zip(urls, values):
            try:
                entries[url] = json.loads(raw) if raw else None
            except json.JSONDecodeError:
                logger.warning(f"Corrupt http cache entry for {url}, ignoring.")
                entries[url] = None
        return entries

    async def set_entries(self, entries: Dict[str, Dict[str, Any]]) -> bool:
        """Stores several entries in a single pipeline."""
        self._check_client()
        if not entries:
            return True
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for url, entry in entries.items():
                    pipe.set(self._key(url), json.dumps(entry, default=str), ex=self.ttl_seconds)
                await pipe.execute()
            return True
        except RedisError as e:
            logger.error(f"Redis pipeline SET error for {len(entries)} http cache keys: {e}", exc_info=True)
            return False

    async def clear_entries(self, urls: Optional[List[str]] = None) -> bool:
        """Clears the given entries, or every http cache entry when urls is None."""
        if urls is None:
            return await self.delete_by_prefix(HTTP_CACHE_PREFIX)
        self._check_client()
        if not urls:
            return False
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for url in urls:
                    pipe.delete(self._key(url))
                results = await pipe.execute()
            return sum(results) > 0
        except RedisError as e:
            logger.error(f"Redis pipeline DELETE error for {len(urls)} http cache keys: {e}", exc_info=True)
            return False


class RateLimitResult(NamedTuple):
    is_limited: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int

    def headers(self) -> Dict[str, str]:
        """``X-RateLimit-*`` headers, plus ``Retry-After`` when limited."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.is_limited:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """
    Sliding-window request limiter. Each key is a sorted set of hit
    timestamps; hits older than the window are dropped before counting.

    Redis errors let the request through.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @staticmethod
    def _key(key: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{key}"

    async def hit(self, key: str, max_requests: int, window_seconds: int = 3600) -> RateLimitResult:
        """Records one request for ``key`` unless the window is already full."""
        now = time.time()
        redis_key = self._key(key)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
                pipe.zrange(redis_key, 0, -1, withscores=True)
                _, entries = await pipe.execute()
            timestamps = sorted(score for _, score in entries)

            if len(timestamps) >= max_requests:
                reset_at = timestamps[0] + window_seconds
                logger.warning(f"Rate limit reached for {key}: {len(timestamps)}/{max_requests}")
                return RateLimitResult(True, max_requests, 0, reset_at, max(1, math.ceil(reset_at - now)))

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zadd(redis_key, {f"{now}:{secrets.token_hex(4)}": now})
                pipe.expire(redis_key, window_seconds)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis error checking rate limit for {key}: {e}", exc_info=True)
            return RateLimitResult(False, max_requests, max_requests, now + window_seconds, 0)

        reset_at = (timestamps[0] if timestamps else now) + window_seconds
        return RateLimitResult(False, max_requests, max_requests - len(timestamps) - 1, reset_at, 0)

    async def reset(self, key: str) -> bool:
        try:
            return await self.client.delete(self._key(key)) > 0
        except RedisError as e:
            logger.error(f"Redis error resetting rate limit for {key}: {e}", exc_info=True)
            return False
