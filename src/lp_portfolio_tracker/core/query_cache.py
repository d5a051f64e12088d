"""In-process query cache with deduplication, stale-while-revalidate, and auto-refresh."""

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from decimal import Decimal
from enum import StrEnum
from typing import Protocol

from lp_portfolio_tracker.core.background import BackgroundTasks
from lp_portfolio_tracker.core.config import ReadPathConfig
from lp_portfolio_tracker.core.models import GlobalSummary, OutcomeSource, ResolutionOutcome
from lp_portfolio_tracker.remote.exceptions import QueryFailedError
from lp_portfolio_tracker.remote.retry import RetryConfig

logger = logging.getLogger(__name__)

QueryKey = tuple[str, ...]
Listener = Callable[[ResolutionOutcome], None]

DEFAULT_STALE_TIME = 5 * 60
DEFAULT_GC_TIME = 30 * 60
DEFAULT_REFETCH_INTERVAL = 60


def address_key(address: str) -> QueryKey:
    """Key prefix shared by every query about one address."""
    return ("portfolio", "addresses", address)


def positions_key(address: str) -> QueryKey:
    """Key of the positions query for one address."""
    return (*address_key(address), "positions")


class OutcomeResolver(Protocol):
    """Anything that can resolve a portfolio key to a tagged outcome."""

    async def resolve_outcome(self, key: str) -> ResolutionOutcome:
        ...


class QueryStatus(StrEnum):
    """Lifecycle state of one query key."""

    IDLE = "idle"
    LOADING = "loading"
    FRESH = "fresh"
    STALE = "stale"
    FAILED = "failed"


class QueryEntry:
    """
    Cached state for one query key.

    Parameters
    ----------
    key : QueryKey
        Query key
    address : str
        Portfolio address the key belongs to
    now : float
        Creation time on the layer's clock

    """

    def __init__(self, key: QueryKey, address: str, now: float) -> None:
        self.key = key
        self.address = address
        self.outcome: ResolutionOutcome | None = None
        self.updated_at: float | None = None
        self.error: BaseException | None = None
        self.last_access = now
        self.in_flight: asyncio.Task[ResolutionOutcome] | None = None
        # bumped on invalidation; results started under an older generation are discarded
        self.generation = 0
        self.subscriptions: set[Subscription] = set()
        self.refresh_loop: asyncio.Task[None] | None = None

    def clear(self) -> None:
        """Forget the cached result so the next read resolves again."""
        self.outcome = None
        self.updated_at = None
        self.error = None


class Subscription:
    """
    Handle for an active subscriber of one address.

    While at least one subscription is open the address is refreshed on a
    fixed interval. The listener is called only once a new result is ready,
    so previously delivered data is never replaced by nothing.

    """

    def __init__(self, layer: "QueryCacheLayer", entry: QueryEntry, listener: Listener | None) -> None:
        self._layer = layer
        self._entry = entry
        self.listener = listener
        self.closed = False

    @property
    def address(self) -> str:
        return self._entry.address

    @property
    def latest(self) -> ResolutionOutcome | None:
        """Most recent result for the address, if any."""
        return self._entry.outcome

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._layer._unsubscribe(self._entry, self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        self.close()


class QueryCacheLayer:
    """
    Caches resolved portfolios in memory, keyed by request identity.

    * Concurrent reads of one key share a single in-flight resolution.
    * Results are fresh for ``stale_time`` seconds; stale results are
      returned immediately while one background refresh runs.
    * Entries nobody has read or subscribed to for ``gc_time`` seconds are
      evicted.
    * Subscribed keys are refreshed every ``refetch_interval`` seconds.
    * Failed resolutions are retried according to ``retry_config``.

    Parameters
    ----------
    resolver : OutcomeResolver
        Resolver called on cache misses and refreshes
    stale_time : float
        Seconds a result stays fresh
    gc_time : float
        Seconds an unused entry is kept
    refetch_interval : float
        Seconds between refreshes of subscribed keys
    retry_config : RetryConfig | None
        Retry policy for failed resolutions
    clock : Callable[[], float]
        Monotonic clock in seconds

    """

    def __init__(
        self,
        resolver: OutcomeResolver,
        stale_time: float = DEFAULT_STALE_TIME,
        gc_time: float = DEFAULT_GC_TIME,
        refetch_interval: float = DEFAULT_REFETCH_INTERVAL,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.stale_time = stale_time
        self.gc_time = gc_time
        self.refetch_interval = refetch_interval
        self.retry_config = retry_config or RetryConfig()
        self.clock = clock
        self.background = BackgroundTasks()
        self._entries: dict[QueryKey, QueryEntry] = {}

    @classmethod
    def from_config(cls, resolver: OutcomeResolver, config: ReadPathConfig) -> "QueryCacheLayer":
        """Build a query layer using the timing and retry settings of a config."""
        return cls(
            resolver,
            stale_time=config.stale_time,
            gc_time=config.gc_time,
            refetch_interval=config.refetch_interval,
            retry_config=RetryConfig(
                max_retries=config.max_retries,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
            ),
        )

    async def fetch(self, address: str) -> ResolutionOutcome:
        """
        Read the portfolio for an address through the cache.

        Parameters
        ----------
        address : str
            Portfolio address

        Returns
        -------
        ResolutionOutcome
            Cached result (fresh or stale) or a newly resolved one

        Raises
        ------
        ValueError
            If the address is blank
        QueryFailedError
            If nothing is cached and resolution failed after all retries

        """
        entry = self._touch(address)

        if entry.outcome is not None:
            if self._is_stale(entry):
                self._ensure_in_flight(entry)
            return entry.outcome

        return await asyncio.shield(self._ensure_in_flight(entry))

    def prefetch(self, address: str) -> None:
        """Start resolving an address in the background unless a fresh result is cached."""
        entry = self._touch(address)
        if entry.outcome is None or self._is_stale(entry):
            self._ensure_in_flight(entry)

    def subscribe(self, address: str, listener: Listener | None = None) -> Subscription:
        """
        Keep an address refreshed while the returned subscription is open.

        Parameters
        ----------
        address : str
            Portfolio address
        listener : Listener | None
            Called with every new result for the address

        Returns
        -------
        Subscription
            Handle to close when the data is no longer displayed

        """
        entry = self._touch(address)
        subscription = Subscription(self, entry, listener)
        entry.subscriptions.add(subscription)

        if entry.refresh_loop is None:
            entry.refresh_loop = self.background.spawn(self._refresh_loop(entry), name=f"refresh-loop:{entry.address}")
        if entry.outcome is None or self._is_stale(entry):
            self._ensure_in_flight(entry)

        return subscription

    def invalidate(self, address: str) -> int:
        """
        Drop every cached result associated with an address.

        An entry with a resolution in flight is kept, and that resolution
        starts over so its waiters receive a result fetched after the
        invalidation. Entries with open subscriptions are refetched in the
        background. Other entries are removed outright.

        Parameters
        ----------
        address : str
            Portfolio address

        Returns
        -------
        int
            Number of entries invalidated

        """
        prefix = address_key(self._normalize(address))
        matching = [entry for key, entry in self._entries.items() if key[: len(prefix)] == prefix]

        for entry in matching:
            entry.clear()
            if entry.in_flight is not None:
                entry.generation += 1
            elif entry.subscriptions:
                self._ensure_in_flight(entry)
            else:
                del self._entries[entry.key]

        logger.debug("Invalidated %d cached entries for %s", len(matching), address)
        return len(matching)

    def state(self, address: str) -> QueryStatus:
        """Current lifecycle state of the positions query for an address."""
        entry = self._entries.get(positions_key(self._normalize(address)))
        if entry is None:
            return QueryStatus.IDLE
        if entry.in_flight is not None:
            return QueryStatus.LOADING
        if entry.error is not None:
            return QueryStatus.FAILED
        if entry.outcome is None:
            return QueryStatus.IDLE
        return QueryStatus.STALE if self._is_stale(entry) else QueryStatus.FRESH

    def peek(self, address: str) -> ResolutionOutcome | None:
        """Cached result for an address without triggering any resolution."""
        entry = self._entries.get(positions_key(self._normalize(address)))
        return entry.outcome if entry is not None else None

    def global_summary(self) -> GlobalSummary:
        """
        Aggregate totals over every address with a cached result.

        Returns
        -------
        GlobalSummary
            Totals across all cached portfolios

        """
        self.evict_expired()

        total_value = Decimal("0")
        total_positions = 0
        protocols: set[str] = set()
        addresses = 0

        for entry in self._entries.values():
            if entry.outcome is None:
                continue
            summary = entry.outcome.snapshot.effective_summary()
            total_value += summary.total_value_usd
            total_positions += summary.total_positions
            protocols.update(summary.protocols)
            addresses += 1

        return GlobalSummary(
            total_value_usd=total_value,
            total_positions=total_positions,
            total_protocols=len(protocols),
            total_addresses=addresses,
        )

    def evict_expired(self) -> int:
        """
        Remove entries that have gone unused for longer than ``gc_time``.

        Returns
        -------
        int
            Number of entries removed

        """
        now = self.clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if not entry.subscriptions and entry.in_flight is None and now - entry.last_access > self.gc_time
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def settle(self) -> None:
        """Wait until no resolution is in flight."""
        while True:
            pending = [entry.in_flight for entry in self._entries.values() if entry.in_flight is not None]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Stop refresh loops and cancel in-flight resolutions."""
        for entry in self._entries.values():
            entry.subscriptions.clear()
            entry.refresh_loop = None
            if entry.in_flight is not None:
                entry.in_flight.cancel()
        await self.background.cancel_all()
        await asyncio.gather(
            *(entry.in_flight for entry in self._entries.values() if entry.in_flight is not None),
            return_exceptions=True,
        )

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _normalize(address: str) -> str:
        if not isinstance(address, str) or not address.strip():
            msg = "address must be a non-empty string"
            raise ValueError(msg)
        return address.strip()

    def _touch(self, address: str) -> QueryEntry:
        address = self._normalize(address)
        self.evict_expired()

        key = positions_key(address)
        entry = self._entries.get(key)
        if entry is None:
            entry = QueryEntry(key, address, self.clock())
            self._entries[key] = entry
        entry.last_access = self.clock()
        return entry

    def _is_stale(self, entry: QueryEntry) -> bool:
        return entry.updated_at is None or self.clock() - entry.updated_at >= self.stale_time

    def _ensure_in_flight(self, entry: QueryEntry) -> "asyncio.Task[ResolutionOutcome]":
        if entry.in_flight is None:
            task = asyncio.create_task(self._run_query(entry), name=f"query:{entry.address}")
            task.add_done_callback(functools.partial(self._query_done, entry))
            entry.in_flight = task
        return entry.in_flight

    def _query_done(self, entry: QueryEntry, task: "asyncio.Task[ResolutionOutcome]") -> None:
        if entry.in_flight is task:
            entry.in_flight = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("%s", error)

    async def _run_query(self, entry: QueryEntry) -> ResolutionOutcome:
        failures = 0
        while True:
            generation = entry.generation
            try:
                outcome = await self.resolver.resolve_outcome(entry.address)
            except Exception as e:
                if entry.generation != generation:
                    failures = 0
                    continue
                failures += 1
                if not self.retry_config.should_retry(failures, e):
                    entry.error = e
                    raise QueryFailedError(entry.address, e, failures) from e

                delay = self.retry_config.get_delay(failures)
                logger.debug(
                    "Resolution of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    entry.address,
                    failures,
                    self.retry_config.max_attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)
                continue

            if entry.generation != generation:
                logger.debug("Discarding result for %s resolved before invalidation", entry.address)
                failures = 0
                continue

            return self._store(entry, outcome)

    def _store(self, entry: QueryEntry, outcome: ResolutionOutcome) -> ResolutionOutcome:
        previous = entry.outcome
        if (
            outcome.source is OutcomeSource.EMPTY
            and previous is not None
            and previous.source is not OutcomeSource.EMPTY
        ):
            # keep showing the last good data; entry stays stale so it is retried
            logger.warning("Refresh of %s produced no data; keeping previous result", entry.address)
            entry.error = None
            return previous

        entry.outcome = outcome
        entry.updated_at = self.clock()
        entry.error = None
        self._notify(entry, outcome)
        return outcome

    def _notify(self, entry: QueryEntry, outcome: ResolutionOutcome) -> None:
        for subscription in list(entry.subscriptions):
            if subscription.listener is None:
                continue
            try:
                subscription.listener(outcome)
            except Exception:
                logger.exception("Subscriber for %s failed to handle an update", entry.address)

    async def _refresh_loop(self, entry: QueryEntry) -> None:
        while entry.subscriptions:
            await asyncio.sleep(self.refetch_interval)
            if not entry.subscriptions:
                break
            try:
                await asyncio.shield(self._ensure_in_flight(entry))
            except QueryFailedError as e:
                logger.debug("Scheduled refresh of %s failed: %s", entry.address, e)

    def _unsubscribe(self, entry: QueryEntry, subscription: Subscription) -> None:
        entry.subscriptions.discard(subscription)
        entry.last_access = self.clock()
        if not entry.subscriptions and entry.refresh_loop is not None:
            entry.refresh_loop.cancel()
            entry.refresh_loop = None
