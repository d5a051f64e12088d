"""Pytest configuration and shared fixtures for lp-portfolio-tracker tests."""

import asyncio

import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

from lp_portfolio_tracker.core.models import PortfolioSnapshot
from lp_portfolio_tracker.monitoring import PerformanceMonitor
from lp_portfolio_tracker.storage import JsonFileBackupStore

ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


@pytest.fixture
def address() -> str:
    return ADDRESS


@pytest.fixture
def positions_payload() -> dict:
    """Body of a successful /lp-positions response."""
    return {
        "lpPositions": [
            {
                "mint": "9Xzv2PnR1ZsqcBTw5tzJvQmJQ4aE7f8nBz3Rk5C1uVxY",
                "protocol": "meteora",
                "amount": "1500000",
                "pool": {"name": "SOL-USDC", "bin_step": 10, "address": "ARwi1S4DaiTG5DX7S4M4ZsrXqpMD1MrTmbu9ue2tpmEq"},
                "tokenInfo": {
                    "tokenX": {"symbol": "SOL", "decimals": 9, "userAmount": "12.5", "reserveAmount": "1000"},
                    "tokenY": {"symbol": "USDC", "decimals": 6, "userAmount": "1850.25", "reserveAmount": "150000"},
                },
                "valueUSD": "3725.25",
                "tokenXValueUSD": "1875.00",
                "tokenYValueUSD": "1850.25",
                "lastPriceUpdate": "2026-10-19T12:00:00Z",
                "metrics": {"feeApr": "0.42", "inRange": True},
            },
            {
                "mint": "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",
                "protocol": "orca",
                "amount": 250,
                "valueUSD": None,
            },
        ],
        "summary": {
            "totalPositions": 2,
            "protocols": ["meteora", "orca"],
            "totalValueUSD": "3725.25",
            "positionsWithPrices": 1,
        },
    }


@pytest.fixture
def snapshot(positions_payload) -> PortfolioSnapshot:
    return PortfolioSnapshot.model_validate(positions_payload)


@pytest.fixture
def monitor() -> PerformanceMonitor:
    return PerformanceMonitor()


@pytest.fixture
def backup_store(tmp_path) -> JsonFileBackupStore:
    return JsonFileBackupStore(tmp_path / "backups")


class FakeSocket:
    """Stand-in for socketio.AsyncClient that connects only to reachable URLs."""

    def __init__(self, reachable: set[str]) -> None:
        self.reachable = reachable
        self.handlers = {}
        self.emitted = []
        self.url = None
        self.connected = False
        self._closed = asyncio.Event()

    def on(self, event, handler):
        self.handlers[event] = handler

    async def connect(self, url, transports=None, wait_timeout=None):
        self.url = url
        if url not in self.reachable:
            raise SocketConnectionError("Connection refused by the server")
        self.connected = True

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def wait(self):
        await self._closed.wait()

    async def disconnect(self):
        self.connected = False
        self._closed.set()


class FakeSocketFactory:
    """Builds FakeSocket clients and keeps every one it built."""

    def __init__(self) -> None:
        self.reachable: set[str] = set()
        self.sockets: list[FakeSocket] = []

    def __call__(self, **kwargs) -> FakeSocket:
        socket = FakeSocket(self.reachable)
        self.sockets.append(socket)
        return socket


@pytest.fixture
def sockets() -> FakeSocketFactory:
    return FakeSocketFactory()
