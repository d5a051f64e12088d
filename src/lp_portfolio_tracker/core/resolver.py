"""Multi-tier portfolio resolution: remote cache, API endpoints, local backup, empty."""

import asyncio
import logging

from lp_portfolio_tracker.core.background import BackgroundTasks
from lp_portfolio_tracker.core.models import BackupRecord, PortfolioSnapshot, ResolutionOutcome
from lp_portfolio_tracker.monitoring import MetricsSink, PerformanceMonitor, safe_record, safe_timer
from lp_portfolio_tracker.remote.cache import DEFAULT_TTL, RemoteCache
from lp_portfolio_tracker.remote.exceptions import AllEndpointsFailedError, NotFoundError, TierTimeoutError
from lp_portfolio_tracker.remote.fetcher import EndpointFallbackFetcher
from lp_portfolio_tracker.storage.backup import BackupStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TIMEOUT = 2.0


class PortfolioResolver:
    """
    Resolves a portfolio through every tier until one produces data.

    Workflow:
    1. Read the shared cache under a short client-side timeout
    2. On a miss, fall back through the API endpoints in order
    3. On success, write the snapshot to the cache and the backup in the
       background and return immediately
    4. If every endpoint failed, use a fresh-enough local backup
    5. Otherwise return an empty snapshot

    Resolution never raises: every failure degrades to a lesser tier.

    Parameters
    ----------
    cache : RemoteCache
        Shared snapshot cache
    fetcher : EndpointFallbackFetcher
        Endpoint fallback fetcher
    backup : BackupStore
        Local backup store
    monitor : MetricsSink | None
        Instrumentation sink
    cache_timeout : float
        Bound on cache reads and writes, in seconds
    cache_ttl : int
        TTL for snapshots written to the cache, in seconds

    """

    def __init__(
        self,
        cache: RemoteCache,
        fetcher: EndpointFallbackFetcher,
        backup: BackupStore,
        monitor: MetricsSink | None = None,
        cache_timeout: float = DEFAULT_CACHE_TIMEOUT,
        cache_ttl: int = DEFAULT_TTL,
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.backup = backup
        self.monitor = monitor or PerformanceMonitor()
        self.cache_timeout = cache_timeout
        self.cache_ttl = cache_ttl
        self.background = BackgroundTasks(error_sink=self._on_background_error)

    async def resolve(self, key: str) -> PortfolioSnapshot:
        """
        Resolve the snapshot for a key.

        Parameters
        ----------
        key : str
            Portfolio key (wallet address)

        Returns
        -------
        PortfolioSnapshot
            Snapshot from the first tier that produced one, or an empty snapshot

        """
        outcome = await self.resolve_outcome(key)
        return outcome.snapshot

    async def resolve_outcome(self, key: str) -> ResolutionOutcome:
        """
        Resolve a key and report which tier answered.

        Parameters
        ----------
        key : str
            Portfolio key (wallet address)

        Returns
        -------
        ResolutionOutcome
            Tagged outcome; ``EMPTY`` when no tier had data

        """
        if not key or not key.strip():
            logger.warning("Refusing to resolve a blank portfolio key")
            return ResolutionOutcome.empty()

        key = key.strip()
        stop_total = safe_timer(self.monitor, "portfolio-fetch-total")
        try:
            return await self._resolve_tiers(key)
        except Exception:
            logger.exception("Unexpected error resolving %s; returning empty snapshot", key)
            safe_record(self.monitor, "resolve-error")
            return ResolutionOutcome.empty()
        finally:
            stop_total()

    async def _resolve_tiers(self, key: str) -> ResolutionOutcome:
        cached = await self._read_cache(key)
        if cached is not None:
            logger.debug("Cache HIT for %s", key)
            return ResolutionOutcome.cache_hit(cached)

        try:
            result = await self.fetcher.fetch(key)
        except AllEndpointsFailedError as e:
            logger.warning("All API endpoints failed for %s: %s", key, e.last_error)
        except Exception:
            logger.exception("Endpoint fetch for %s failed unexpectedly", key)
        else:
            self._write_back(key, result.snapshot)
            return ResolutionOutcome.remote_hit(result.snapshot, result.endpoint)

        try:
            record = await self._load_backup(key)
        except NotFoundError as e:
            logger.warning("%s; returning empty snapshot", e)
            safe_record(self.monitor, "empty-fallback")
            return ResolutionOutcome.empty()

        age = record.age_seconds()
        logger.info("Serving backup for %s (%.0f minutes old)", key, age / 60)
        safe_record(self.monitor, "backup-hit")
        return ResolutionOutcome.backup_hit(record.data, age)

    async def _load_backup(self, key: str) -> BackupRecord:
        try:
            record = await self.backup.load(key)
        except Exception as e:
            logger.warning("Backup read failed for %s: %s", key, e)
            record = None
        if record is None:
            raise NotFoundError(key)
        return record

    async def _read_cache(self, key: str) -> PortfolioSnapshot | None:
        stop_timer = safe_timer(self.monitor, "remote-cache-read")
        try:
            cached = await asyncio.wait_for(self.cache.get(key), timeout=self.cache_timeout)
        except TimeoutError:
            logger.warning("%s; treating as miss", TierTimeoutError("Remote cache read", self.cache_timeout))
            safe_record(self.monitor, "cache-timeout")
            return None
        except Exception as e:
            logger.warning("Remote cache read failed for %s, falling back to API: %s", key, e)
            safe_record(self.monitor, "cache-error")
            return None
        finally:
            stop_timer()

        safe_record(self.monitor, "cache-hit" if cached is not None else "cache-miss")
        return cached

    def _write_back(self, key: str, snapshot: PortfolioSnapshot) -> None:
        self.background.spawn(self._write_cache(key, snapshot), name=f"cache-write:{key}")
        self.background.spawn(self.backup.save(key, snapshot), name=f"backup-write:{key}")

    async def _write_cache(self, key: str, snapshot: PortfolioSnapshot) -> None:
        await asyncio.wait_for(self.cache.set(key, snapshot, self.cache_ttl), timeout=self.cache_timeout)

    def _on_background_error(self, name: str, error: BaseException) -> None:
        logger.warning("Background write %s failed: %s", name, error)
        safe_record(self.monitor, "background-write-error")

    async def drain(self) -> None:
        """Wait for pending background writes to finish."""
        await self.background.drain()
