"""Pool cache keyed by coarse geographic bucket.

Entries carry their own timestamp; freshness is decided by the reader
(``CacheEntry.is_fresh``), so stale entries are simply ignored, never evicted.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from typing import Dict, Optional, Protocol

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from .schemas import CacheEntry

logger = logging.getLogger(__name__)

CACHE_KEY = "challenge-pool:{bucket}"


class PoolCacheError(RuntimeError):
    """Raised when the cache backend cannot be read or written."""


class PoolCache(Protocol):
    async def get(self, key: str) -> Optional[CacheEntry]: ...

    async def set(self, key: str, entry: CacheEntry) -> None: ...


class InMemoryPoolCache:
    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        return deepcopy(entry) if entry is not None else None

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = deepcopy(entry)

    def __len__(self) -> int:
        return len(self._entries)


class RedisPoolCache:
    """Shared cache for server deployments (redis.asyncio)."""

    def __init__(self, url: str, *, retention_s: int = 6 * 3600, client=None) -> None:
        if client is None:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=1.0,
                socket_timeout=1.5,
            )
        self._r = client
        # Storage hygiene only; freshness is still judged by CacheEntry.timestamp.
        self._retention_s = retention_s

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self._r.get(CACHE_KEY.format(bucket=key))
        except (RedisError, OSError) as exc:
            raise PoolCacheError(f"Redis read failed for {key}: {exc}") from exc
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", key, exc)
            return None

    async def set(self, key: str, entry: CacheEntry) -> None:
        try:
            await self._r.set(CACHE_KEY.format(bucket=key), entry.model_dump_json(), ex=self._retention_s)
        except (RedisError, OSError) as exc:
            raise PoolCacheError(f"Redis write failed for {key}: {exc}") from exc
