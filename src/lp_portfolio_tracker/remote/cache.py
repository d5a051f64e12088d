"""Shared TTL cache for resolved portfolio snapshots."""

import logging
import time
from typing import Protocol

from pydantic import ValidationError
from redis.asyncio import Redis

from lp_portfolio_tracker.core.models import PortfolioSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300


def cache_key(address: str) -> str:
    """Namespaced cache key for a portfolio address."""
    return f"portfolio:{address}"


class RemoteCache(Protocol):
    """
    Interface of the shared snapshot cache.

    Implementations may be slow or unreachable; callers bound every call
    with their own timeout.

    """

    async def get(self, key: str) -> PortfolioSnapshot | None:
        ...

    async def set(self, key: str, snapshot: PortfolioSnapshot, ttl: int | None = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class CacheEntry:
    """
    Serialized snapshot with an absolute expiry time.

    Parameters
    ----------
    payload : str
        Snapshot JSON
    ttl : int
        Seconds until the entry expires
    now : float | None
        Current epoch time. Uses ``time.time()`` if None.

    """

    def __init__(self, payload: str, ttl: int, now: float | None = None) -> None:
        self.payload = payload
        self.expires_at = (time.time() if now is None else now) + ttl

    def is_expired(self, now: float | None = None) -> bool:
        """Whether the entry's TTL has elapsed."""
        return (time.time() if now is None else now) > self.expires_at


class InMemoryRemoteCache:
    """
    Process-local stand-in for the shared cache.

    Holds snapshot JSON rather than model instances, so a reader can never
    mutate what another reader will get.

    Parameters
    ----------
    default_ttl : int
        TTL applied when ``set`` is called without one, in seconds

    """

    def __init__(self, default_ttl: int = DEFAULT_TTL) -> None:
        self.default_ttl = default_ttl
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> PortfolioSnapshot | None:
        name = cache_key(key)
        entry = self._entries.get(name)
        if entry is not None and entry.is_expired():
            del self._entries[name]
            entry = None
        return PortfolioSnapshot.model_validate_json(entry.payload) if entry else None

    async def set(self, key: str, snapshot: PortfolioSnapshot, ttl: int | None = None) -> None:
        self._entries[cache_key(key)] = CacheEntry(snapshot.to_json(), ttl or self.default_ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(cache_key(key), None)

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were dropped."""
        now = time.time()
        stale = [name for name, entry in self._entries.items() if entry.is_expired(now)]
        for name in stale:
            del self._entries[name]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRemoteCache:
    """
    Snapshot cache backed by Redis.

    Parameters
    ----------
    client : Redis
        ``redis.asyncio`` client created with ``decode_responses=True``
    default_ttl : int
        Default time-to-live in seconds

    """

    def __init__(self, client: Redis, default_ttl: int = DEFAULT_TTL) -> None:
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, default_ttl: int = DEFAULT_TTL) -> "RedisRemoteCache":
        """
        Create a cache from a Redis connection URL.

        Parameters
        ----------
        url : str
            Redis URL (e.g., 'redis://localhost:6379/0', 'rediss://...')
        default_ttl : int
            Default time-to-live in seconds

        Returns
        -------
        RedisRemoteCache
            Cache instance owning its client

        """
        return cls(Redis.from_url(url, decode_responses=True), default_ttl=default_ttl)

    async def get(self, key: str) -> PortfolioSnapshot | None:
        raw = await self.client.get(cache_key(key))
        if raw is None:
            return None
        try:
            return PortfolioSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding undecodable cache entry for %s: %s", key, e)
            return None

    async def set(self, key: str, snapshot: PortfolioSnapshot, ttl: int | None = None) -> None:
        ttl = ttl or self.default_ttl
        await self.client.setex(cache_key(key), ttl, snapshot.to_json())
        logger.debug("Cache SET %s (TTL: %ss)", cache_key(key), ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(cache_key(key))

    async def aclose(self) -> None:
        """Close the underlying Redis connection pool."""
        await self.client.aclose()

    async def __aenter__(self) -> "RedisRemoteCache":
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        await self.aclose()
