"""Remote tiers: shared cache, endpoint fallback, retry policy, backend warmup, and push updates."""

from lp_portfolio_tracker.remote.cache import (
    CacheEntry,
    InMemoryRemoteCache,
    RedisRemoteCache,
    RemoteCache,
    cache_key,
)
from lp_portfolio_tracker.remote.exceptions import (
    AllEndpointsFailedError,
    NotFoundError,
    PortfolioReadError,
    QueryFailedError,
    SnapshotValidationError,
    TierTimeoutError,
    TransportError,
)
from lp_portfolio_tracker.remote.fetcher import EndpointFallbackFetcher, FetchResult, parse_snapshot
from lp_portfolio_tracker.remote.retry import RetryConfig
from lp_portfolio_tracker.remote.updates import INVALIDATING_EVENTS, PortfolioUpdateListener
from lp_portfolio_tracker.remote.warmup import BackendWarmup

__all__ = [
    "AllEndpointsFailedError",
    "BackendWarmup",
    "CacheEntry",
    "EndpointFallbackFetcher",
    "FetchResult",
    "INVALIDATING_EVENTS",
    "InMemoryRemoteCache",
    "NotFoundError",
    "PortfolioReadError",
    "PortfolioUpdateListener",
    "QueryFailedError",
    "RedisRemoteCache",
    "RemoteCache",
    "RetryConfig",
    "SnapshotValidationError",
    "TierTimeoutError",
    "TransportError",
    "cache_key",
    "parse_snapshot",
]
