"""Local key-value cache for credit state.

The cache mirrors the authoritative document store and may be stale. Only the
credit ledger writes keys under the credits prefix; anything else reading them
must treat the value as a snapshot.
"""

from typing import Protocol

from velto_credits.config import settings
from velto_credits.redis_client import RedisClient


def cache_key(identity: str | None, prefix: str | None = None) -> str:
    """Cache key for a user's credit state, e.g. ``ai_credits_v1_<uid>``."""
    prefix = prefix or settings.CREDITS_CACHE_PREFIX
    return f"{prefix}_{identity or settings.ANONYMOUS_IDENTITY}"


class KeyValueCache(Protocol):
    """String key-value cache used by the credit ledger."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryCache:
    """Process-local cache."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data


class RedisCache:
    """Cache shared by every process that points at the same Redis."""

    def __init__(self, redis_client: RedisClient, ttl_seconds: int | None = None) -> None:
        """Initialize the cache.

        Args:
            redis_client: Connected Redis client
            ttl_seconds: Optional expiry for cached entries
        """
        self._redis = redis_client
        self._ttl = ttl_seconds

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._redis.set(key, value, ex=self._ttl)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)
