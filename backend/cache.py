"""
Advisory key-value cache for synthesized retrieval context.

The cache never decides correctness: a failed or absent cache behaves as a
miss, and write failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from config import FeatureConfig

logger = logging.getLogger(__name__)


class NullCache:
    """Always misses."""

    backend = "none"

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    async def invalidate_pattern(self, pattern: str) -> int:
        return 0

    async def close(self) -> None:
        return None


class InProcessCache:
    """
    Process-local TTL cache with glob-style pattern invalidation.

    Invalidations only reach this process. Deployments that run the API and
    `run_worker.py` separately need the redis backend.
    """

    backend = "memory"

    def __init__(self, max_entries: int = 2048) -> None:
        self._max_entries = max(16, int(max_entries))
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._guard = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        now_ts = time.monotonic()
        async with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= now_ts:
                self._entries.pop(key, None)
                return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raw = json.dumps(value, ensure_ascii=False, sort_keys=True)
        expires_at = time.monotonic() + max(1, int(ttl_seconds))
        async with self._guard:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_locked()
            self._entries[key] = (expires_at, raw)

    async def invalidate_pattern(self, pattern: str) -> int:
        async with self._guard:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                self._entries.pop(key, None)
        return len(doomed)

    async def close(self) -> None:
        async with self._guard:
            self._entries.clear()

    def _evict_locked(self) -> None:
        now_ts = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now_ts]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            oldest = min(self._entries.items(), key=lambda item: item[1][0])[0]
            self._entries.pop(oldest, None)


class RedisCache:
    """Redis-backed cache. Connection or command errors degrade to a miss."""

    backend = "redis"

    def __init__(self, url: str, client: Optional[Any] = None) -> None:
        self.url = url
        self._redis = client if client is not None else redis_asyncio.from_url(
            url, decode_responses=True
        )

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._redis.set(
                key,
                json.dumps(value, ensure_ascii=False, sort_keys=True),
                ex=max(1, int(ttl_seconds)),
            )
        except (RedisError, OSError) as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    async def invalidate_pattern(self, pattern: str) -> int:
        removed = 0
        try:
            async for key in self._redis.scan_iter(match=pattern, count=200):
                removed += int(await self._redis.delete(key) or 0)
        except (RedisError, OSError) as exc:
            logger.warning("Cache invalidation failed for %s: %s", pattern, exc)
        return removed

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Closing redis cache failed: %s", exc)


def build_cache(config: FeatureConfig):
    backend = (config.cache_backend or "memory").strip().lower()
    if backend == "redis":
        if not config.redis_url:
            logger.warning("CACHE_BACKEND=redis without REDIS_URL; falling back to in-process cache")
            return InProcessCache()
        return RedisCache(config.redis_url)
    if backend in {"none", "off", "disabled"}:
        return NullCache()
    return InProcessCache()
