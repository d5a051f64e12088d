"""Socket.IO subscriber that invalidates cached portfolios when the backend pushes updates."""

import asyncio
import functools
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import socketio
from socketio.exceptions import SocketIOError

from lp_portfolio_tracker.core.config import ReadPathConfig
from lp_portfolio_tracker.remote.cache import RemoteCache

logger = logging.getLogger(__name__)

# server events that mean the cached portfolio of an address is out of date
INVALIDATING_EVENTS = ("position-update", "portfolio-refresh")


class Invalidator(Protocol):
    """Anything that can drop in-process results for an address."""

    def invalidate(self, address: str) -> int:
        ...


class PortfolioUpdateListener:
    """
    Listens for portfolio push events and invalidates cached data.

    The URLs are tried in order until one accepts the connection. When the
    connection drops, or no URL is reachable, the whole list is tried again
    after an exponentially growing delay, up to ``max_reconnects`` rounds in
    a row. On every ``position-update`` or ``portfolio-refresh`` event the
    address is deleted from the shared cache and then invalidated in the
    query layer, so the next read goes to the API.

    Parameters
    ----------
    urls : Sequence[str]
        Socket.IO server URLs in the order they should be tried
    cache : RemoteCache | None
        Shared cache to evict addresses from
    queries : Invalidator | None
        In-process query cache to invalidate
    connect_timeout : float
        Seconds to wait for each connection attempt
    max_reconnects : int
        Reconnect rounds before giving up
    reconnect_delay : float
        Delay before the first reconnect round, doubled on each further round
    client_factory : Callable[[], socketio.AsyncClient] | None
        Builds one client per connection attempt

    """

    TRANSPORTS = ["websocket", "polling"]

    def __init__(
        self,
        urls: Sequence[str],
        cache: RemoteCache | None = None,
        queries: Invalidator | None = None,
        connect_timeout: float = 5.0,
        max_reconnects: int = 5,
        reconnect_delay: float = 1.0,
        client_factory: Callable[[], socketio.AsyncClient] | None = None,
    ) -> None:
        self.urls = [url.rstrip("/") for url in urls if url]
        if not self.urls:
            msg = "at least one push channel URL is required"
            raise ValueError(msg)

        self.cache = cache
        self.queries = queries
        self.connect_timeout = connect_timeout
        self.max_reconnects = max_reconnects
        self.reconnect_delay = reconnect_delay
        # reconnection is driven by run() so that every round walks the URL list
        self.client_factory = client_factory or functools.partial(socketio.AsyncClient, reconnection=False)

        self.client: socketio.AsyncClient | None = None
        self.connected_url: str | None = None
        self.reconnect_attempts = 0
        self.addresses: set[str] = set()
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: ReadPathConfig,
        cache: RemoteCache | None = None,
        queries: Invalidator | None = None,
    ) -> "PortfolioUpdateListener":
        """Build a listener from the push channel settings of a config."""
        return cls(
            config.ws_urls,
            cache=cache,
            queries=queries,
            connect_timeout=config.ws_connect_timeout,
            max_reconnects=config.ws_max_reconnects,
            reconnect_delay=config.ws_reconnect_delay,
        )

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.client.connected

    async def connect(self) -> str | None:
        """
        Connect to the first reachable URL.

        Addresses registered with :meth:`subscribe_address` are announced to
        the server once connected.

        Returns
        -------
        str | None
            URL connected to, or None if every URL failed

        """
        for url in self.urls:
            client = self.client_factory()
            for event in INVALIDATING_EVENTS:
                client.on(event, self._handler_for(event))

            logger.debug("Connecting to push channel %s", url)
            try:
                await client.connect(url, transports=self.TRANSPORTS, wait_timeout=self.connect_timeout)
            except SocketIOError as e:
                logger.warning("Push channel %s unavailable: %s", url, e)
                continue

            self.client = client
            self.connected_url = url
            self.reconnect_attempts = 0
            logger.info("Push channel connected: %s", url)
            for address in sorted(self.addresses):
                await self._announce("subscribe-address", address)
            return url

        logger.warning("All %d push channel URLs failed", len(self.urls))
        return None

    async def run(self) -> None:
        """Stay connected until cancelled or the reconnect budget is spent."""
        while True:
            if self.is_connected or await self.connect() is not None:
                await self.client.wait()
                logger.info("Push channel %s disconnected", self.connected_url)
                self.client = None
                self.connected_url = None

            if self.reconnect_attempts >= self.max_reconnects:
                logger.warning("Push channel gave up after %d reconnect attempts", self.reconnect_attempts)
                return

            self.reconnect_attempts += 1
            delay = self.reconnect_delay * 2 ** (self.reconnect_attempts - 1)
            logger.info("Reconnecting push channel in %.1fs (attempt %d)", delay, self.reconnect_attempts)
            await asyncio.sleep(delay)

    def start(self) -> "asyncio.Task[None]":
        """Run the connection loop in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="portfolio-updates")
        return self._task

    async def handle_event(self, event: str, data: Any) -> bool:
        """
        Invalidate the address named by a push event.

        Parameters
        ----------
        event : str
            Event name
        data : Any
            Event payload; must carry an ``address`` string

        Returns
        -------
        bool
            True if an address was invalidated

        """
        address = data.get("address") if isinstance(data, dict) else None
        if not isinstance(address, str) or not address.strip():
            logger.warning("Ignoring %s event without an address: %r", event, data)
            return False

        address = address.strip()
        logger.debug("Received %s for %s", event, address)

        if self.cache is not None:
            try:
                await self.cache.delete(address)
            except Exception as e:
                logger.warning("Failed to evict %s from the shared cache: %s", address, e)
        if self.queries is not None:
            self.queries.invalidate(address)
        return True

    async def subscribe_address(self, address: str) -> None:
        """Ask the server for updates about an address, now and after every reconnect."""
        self.addresses.add(address)
        if self.is_connected:
            await self._announce("subscribe-address", address)

    async def unsubscribe_address(self, address: str) -> None:
        self.addresses.discard(address)
        if self.is_connected:
            await self._announce("unsubscribe-address", address)

    async def aclose(self) -> None:
        """Stop reconnecting and disconnect."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self.client is not None:
            await self.client.disconnect()
            self.client = None
            self.connected_url = None

    async def __aenter__(self) -> "PortfolioUpdateListener":
        await self.connect()
        self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        await self.aclose()

    def _handler_for(self, event: str) -> Callable[[Any], Any]:
        async def handler(data: Any = None) -> None:
            await self.handle_event(event, data)

        return handler

    async def _announce(self, event: str, address: str) -> None:
        try:
            await self.client.emit(event, {"address": address})
        except SocketIOError as e:
            logger.warning("Failed to send %s for %s: %s", event, address, e)
