"""Tests for multi-tier portfolio resolution."""

import asyncio
import time
from decimal import Decimal

import httpx
import pytest
import respx
from httpx import Response

from lp_portfolio_tracker.core.models import OutcomeSource, PortfolioSnapshot
from lp_portfolio_tracker.core.resolver import PortfolioResolver
from lp_portfolio_tracker.remote.cache import InMemoryRemoteCache
from lp_portfolio_tracker.remote.fetcher import EndpointFallbackFetcher
from lp_portfolio_tracker.storage import JsonFileBackupStore

PRIMARY = "https://netuno-backend.onrender.com"
SECONDARY = "http://localhost:3001"


class SlowCache(InMemoryRemoteCache):
    """Cache whose reads never finish in time."""

    async def get(self, key):
        await asyncio.sleep(10)
        return await super().get(key)


class BrokenCache(InMemoryRemoteCache):
    """Cache that is unreachable."""

    async def get(self, key):
        raise ConnectionError("redis unreachable")

    async def set(self, key, snapshot, ttl=None):
        raise ConnectionError("redis unreachable")


class GatedCache(InMemoryRemoteCache):
    """Cache whose writes block until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def set(self, key, snapshot, ttl=None):
        await self.release.wait()
        await super().set(key, snapshot, ttl)


class BrokenBackup:
    """Backup store whose reads raise."""

    def __init__(self):
        self.saved = []

    async def save(self, key, snapshot):
        self.saved.append(key)

    async def load(self, key):
        raise OSError("disk unreadable")


class ExplodingFetcher:
    """Fetcher with an unexpected bug."""

    async def fetch(self, key):
        raise KeyError("unexpected")


def make_resolver(cache, backup_store, monitor, endpoints=(PRIMARY, SECONDARY), **kwargs):
    fetcher = EndpointFallbackFetcher(list(endpoints), monitor=monitor)
    return PortfolioResolver(cache, fetcher, backup_store, monitor=monitor, **kwargs)


@pytest.mark.asyncio
@respx.mock
async def test_cache_hit_short_circuits(address, snapshot, backup_store, monitor):
    """Test that a cache hit never contacts an endpoint."""
    route = respx.get(url__startswith=PRIMARY)
    cache = InMemoryRemoteCache()
    await cache.set(address, snapshot)
    resolver = make_resolver(cache, backup_store, monitor)

    outcome = await resolver.resolve_outcome(address)
    await resolver.drain()

    assert outcome.source == OutcomeSource.CACHE_HIT
    assert outcome.snapshot == snapshot
    assert not route.called
    assert await backup_store.load(address) is None
    assert monitor.count("cache-hit") == 1


@pytest.mark.asyncio
@respx.mock
async def test_remote_hit_writes_back(address, positions_payload, backup_store, monitor):
    """Test that a remote success populates the cache and the backup."""
    respx.get(f"{PRIMARY}/lp-positions").mock(return_value=Response(200, json=positions_payload))
    cache = InMemoryRemoteCache()
    resolver = make_resolver(cache, backup_store, monitor)

    outcome = await resolver.resolve_outcome(address)
    await resolver.drain()

    assert outcome.source == OutcomeSource.REMOTE_HIT
    assert outcome.endpoint == PRIMARY
    assert await cache.get(address) == outcome.snapshot
    assert (await backup_store.load(address)).data == outcome.snapshot
    assert monitor.count("cache-miss") == 1


@pytest.mark.asyncio
@respx.mock
async def test_remote_hit_does_not_wait_for_writes(address, positions_payload, backup_store, monitor):
    """Test that write-back runs in the background."""
    respx.get(f"{PRIMARY}/lp-positions").mock(return_value=Response(200, json=positions_payload))
    cache = GatedCache()
    resolver = make_resolver(cache, backup_store, monitor)

    outcome = await asyncio.wait_for(resolver.resolve_outcome(address), timeout=1)

    assert outcome.source == OutcomeSource.REMOTE_HIT
    assert resolver.background.pending >= 1

    cache.release.set()
    await resolver.drain()
    assert await cache.get(address) == outcome.snapshot


@pytest.mark.asyncio
@respx.mock
async def test_slow_cache_treated_as_miss(address, positions_payload, backup_store, monitor):
    """Test that a cache read exceeding its bound falls through to the API."""
    respx.get(f"{PRIMARY}/lp-positions").mock(return_value=Response(200, json=positions_payload))
    resolver = make_resolver(SlowCache(), backup_store, monitor, cache_timeout=0.05)

    outcome = await resolver.resolve_outcome(address)
    await resolver.background.cancel_all()

    assert outcome.source == OutcomeSource.REMOTE_HIT
    assert monitor.count("cache-timeout") == 1


@pytest.mark.asyncio
@respx.mock
async def test_unreachable_cache(address, positions_payload, backup_store, monitor):
    """Test that cache failures never affect the returned result."""
    respx.get(f"{PRIMARY}/lp-positions").mock(return_value=Response(200, json=positions_payload))
    resolver = make_resolver(BrokenCache(), backup_store, monitor)

    outcome = await resolver.resolve_outcome(address)
    await resolver.drain()

    assert outcome.source == OutcomeSource.REMOTE_HIT
    assert monitor.count("cache-error") == 1
    assert monitor.count("background-write-error") == 1
    assert await backup_store.load(address) is not None


@pytest.mark.asyncio
@respx.mock
async def test_503_then_secondary_success(address, positions_payload, backup_store, monitor):
    """Test the primary returning 503 and the secondary answering."""
    respx.get(f"{PRIMARY}/lp-positions").mock(return_value=Response(503))
    respx.get(f"{SECONDARY}/lp-positions").mock(return_value=Response(200, json=positions_payload))
    cache = InMemoryRemoteCache()
    resolver = make_resolver(cache, backup_store, monitor)

    outcome = await resolver.resolve_outcome(address)
    await resolver.drain()

    assert outcome.source == OutcomeSource.REMOTE_HIT
    assert outcome.endpoint == SECONDARY
    assert len(outcome.snapshot.lp_positions) == 2
    assert await cache.get(address) is not None
    assert await backup_store.load(address) is not None


@pytest.mark.asyncio
@respx.mock
async def test_all_endpoints_down_serves_recent_backup(tmp_path, address, snapshot, monitor):
    """Test that a 10-minute-old backup is served when every endpoint is down."""
    respx.get(url__startswith=PRIMARY).mock(side_effect=httpx.ConnectError("connection refused"))
    respx.get(url__startswith=SECONDARY).mock(side_effect=httpx.ConnectError("connection refused"))
    await JsonFileBackupStore(tmp_path, clock=lambda: time.time() - 600).save(address, snapshot)
    resolver = make_resolver(InMemoryRemoteCache(), JsonFileBackupStore(tmp_path), monitor)

    outcome = await resolver.resolve_outcome(address)

    assert outcome.source == OutcomeSource.BACKUP_HIT
    assert outcome.snapshot == snapshot
    assert outcome.age_seconds == pytest.approx(600, abs=5)
    assert monitor.count("backup-hit") == 1


@pytest.mark.asyncio
@respx.mock
async def test_expired_backup_resolves_empty(tmp_path, address, snapshot, monitor):
    """Test that a 25-hour-old backup is never served."""
    respx.get(url__startswith=PRIMARY).mock(return_value=Response(500))
    respx.get(url__startswith=SECONDARY).mock(return_value=Response(500))
    await JsonFileBackupStore(tmp_path, clock=lambda: time.time() - 25 * 3600).save(address, snapshot)
    resolver = make_resolver(InMemoryRemoteCache(), JsonFileBackupStore(tmp_path), monitor)

    outcome = await resolver.resolve_outcome(address)

    assert outcome.source == OutcomeSource.EMPTY


@pytest.mark.asyncio
@respx.mock
async def test_total_failure_resolves_zeroed_summary(address, backup_store, monitor):
    """Test that with no data anywhere the result is an empty, zeroed snapshot."""
    respx.get(url__startswith=PRIMARY).mock(side_effect=httpx.ConnectError("connection refused"))
    respx.get(url__startswith=SECONDARY).mock(return_value=Response(200, json={"oops": True}))
    resolver = make_resolver(InMemoryRemoteCache(), backup_store, monitor)

    snapshot = await resolver.resolve(address)
    await resolver.drain()

    assert snapshot.lp_positions == []
    assert snapshot.summary.total_positions == 0
    assert snapshot.summary.total_value_usd == Decimal("0")
    assert snapshot.summary.protocols == []
    assert monitor.count("empty-fallback") == 1
    assert await backup_store.load(address) is None


@pytest.mark.asyncio
async def test_every_tier_broken_still_resolves(address, monitor):
    """Test that resolution never raises even when every tier misbehaves."""
    backup = BrokenBackup()
    resolver = PortfolioResolver(BrokenCache(), ExplodingFetcher(), backup, monitor=monitor)

    outcome = await resolver.resolve_outcome(address)

    assert outcome.source == OutcomeSource.EMPTY
    assert outcome.snapshot == PortfolioSnapshot.empty()
    assert backup.saved == []


@pytest.mark.asyncio
@respx.mock
async def test_blank_key_touches_nothing(backup_store, monitor):
    """Test that a blank key resolves to empty without any I/O."""
    route = respx.get(url__startswith=PRIMARY)
    resolver = make_resolver(InMemoryRemoteCache(), backup_store, monitor)

    outcome = await resolver.resolve_outcome("   ")

    assert outcome.source == OutcomeSource.EMPTY
    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_total_timer_recorded(address, positions_payload, backup_store, monitor):
    """Test that every resolution is timed end to end."""
    respx.get(f"{PRIMARY}/lp-positions").mock(return_value=Response(200, json=positions_payload))
    resolver = make_resolver(InMemoryRemoteCache(), backup_store, monitor)

    await resolver.resolve(address)
    await resolver.drain()
    await resolver.resolve(address)

    assert monitor.count("portfolio-fetch-total") == 2
    assert monitor.count("api-call") == 1
