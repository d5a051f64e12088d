"""Health pings that wake dormant portfolio API backends."""

import asyncio
import logging
from collections.abc import Sequence

import httpx

logger = logging.getLogger(__name__)


class BackendWarmup:
    """
    Wakes up API backends that sleep when idle.

    Each URL receives several parallel ``/health`` pings; it counts as warm
    as soon as one of them succeeds. Warm URLs are remembered and skipped on
    later calls, and overlapping warmups share the pings of any URL they
    have in common.

    Parameters
    ----------
    client : httpx.AsyncClient | None
        HTTP client. A private client is created (and closed) if None.
    pings_per_url : int
        Parallel pings sent to each URL
    ping_timeout : float
        Timeout per ping in seconds

    """

    HEALTH_PATH = "/health"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        pings_per_url: int = 3,
        ping_timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(headers={"Cache-Control": "no-cache"})
        self.pings_per_url = pings_per_url
        self.ping_timeout = ping_timeout
        self.warmed_urls: set[str] = set()
        self._pending: dict[str, asyncio.Task[None]] = {}

    async def warmup(self, urls: Sequence[str]) -> set[str]:
        """
        Ping every URL that is not yet known to be warm.

        Parameters
        ----------
        urls : Sequence[str]
            Backend base URLs

        Returns
        -------
        set[str]
            All URLs known to be warm after this call

        """
        cold = [url for url in dict.fromkeys(url.rstrip("/") for url in urls) if url not in self.warmed_urls]
        if cold:
            logger.info("Warming up %d backend(s)...", len(cold))
        await asyncio.gather(*(asyncio.shield(self._pending_for(url)) for url in cold))
        return set(self.warmed_urls)

    def _pending_for(self, url: str) -> "asyncio.Task[None]":
        task = self._pending.get(url)
        if task is None:
            task = asyncio.create_task(self._warmup_one(url), name=f"warmup:{url}")
            task.add_done_callback(lambda _: self._pending.pop(url, None))
            self._pending[url] = task
        return task

    async def _warmup_one(self, url: str) -> None:
        results = await asyncio.gather(*(self._ping(url, attempt) for attempt in range(self.pings_per_url)))
        if any(results):
            self.warmed_urls.add(url)
        else:
            logger.warning("All %d pings failed for %s", self.pings_per_url, url)

    async def _ping(self, url: str, attempt: int, timeout: float | None = None) -> bool:
        try:
            response = await self.client.get(f"{url}{self.HEALTH_PATH}", timeout=timeout or self.ping_timeout)
        except httpx.HTTPError as e:
            logger.debug("Ping %d failed for %s: %s", attempt + 1, url, e)
            return False
        return response.is_success

    async def is_ready(self, url: str, timeout: float = 3.0) -> bool:
        """
        Single health probe.

        Parameters
        ----------
        url : str
            Backend base URL
        timeout : float
            Probe timeout in seconds

        Returns
        -------
        bool
            True if ``/health`` answered with a 2xx status

        """
        return await self._ping(url.rstrip("/"), 0, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "BackendWarmup":
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        await self.aclose()
