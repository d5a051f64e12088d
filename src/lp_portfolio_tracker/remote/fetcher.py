"""Sequential fallback across redundant portfolio API endpoints."""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from lp_portfolio_tracker.core.models import PortfolioSnapshot, PortfolioSummary
from lp_portfolio_tracker.monitoring import MetricsSink, PerformanceMonitor, safe_record, safe_timer
from lp_portfolio_tracker.remote.exceptions import (
    AllEndpointsFailedError,
    PortfolioReadError,
    SnapshotValidationError,
    TierTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_TIMEOUT = 45.0


class FetchResult(BaseModel):
    """
    Snapshot accepted from a remote endpoint.

    Attributes
    ----------
    snapshot : PortfolioSnapshot
        Validated snapshot
    endpoint : str
        Base URL that served it

    """

    snapshot: PortfolioSnapshot
    endpoint: str


def parse_snapshot(body: Any, source: str) -> PortfolioSnapshot:
    """
    Validate a raw ``/lp-positions`` response body.

    The body must be an object with an array-typed ``lpPositions`` field.
    A malformed ``summary`` is dropped rather than failing the response,
    since the summary is always recomputable from the positions.

    Parameters
    ----------
    body : Any
        Decoded JSON body
    source : str
        Endpoint the body came from, for error messages

    Returns
    -------
    PortfolioSnapshot
        Parsed snapshot

    Raises
    ------
    SnapshotValidationError
        If the body or any position is malformed

    """
    if not isinstance(body, dict) or not isinstance(body.get("lpPositions"), list):
        msg = f"Invalid response format from {source}: missing lpPositions array"
        raise SnapshotValidationError(msg)

    payload = dict(body)
    raw_summary = payload.pop("summary", None)

    try:
        snapshot = PortfolioSnapshot.model_validate(payload)
    except ValidationError as e:
        msg = f"Invalid lpPositions payload from {source}: {e.error_count()} error(s)"
        raise SnapshotValidationError(msg) from e

    if raw_summary is not None:
        try:
            snapshot.summary = PortfolioSummary.model_validate(raw_summary)
        except ValidationError as e:
            logger.debug("Ignoring malformed summary from %s: %s", source, e)

    return snapshot


def endpoint_label(base_url: str) -> str:
    """Short label for per-endpoint metric names (the URL host)."""
    try:
        return httpx.URL(base_url).host or "api"
    except httpx.InvalidURL:
        return "api"


class EndpointFallbackFetcher:
    """
    Fetches a portfolio from the first endpoint that answers correctly.

    Endpoints are tried strictly in order, one at a time, each bounded by
    its own timeout. Parallel requests are never issued so redundant
    backends are not billed twice for the same read.

    Parameters
    ----------
    endpoints : Sequence[str]
        Ordered base URLs, at least one
    timeout : float
        Total time budget per endpoint in seconds
    monitor : MetricsSink | None
        Instrumentation sink
    client : httpx.AsyncClient | None
        HTTP client. A private client is created (and closed) if None.

    """

    PATH = "/lp-positions"

    def __init__(
        self,
        endpoints: Sequence[str],
        timeout: float = DEFAULT_ENDPOINT_TIMEOUT,
        monitor: MetricsSink | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not endpoints:
            msg = "At least one API endpoint is required"
            raise ValueError(msg)

        self.endpoints = [endpoint.rstrip("/") for endpoint in endpoints]
        self.timeout = timeout
        self.monitor = monitor or PerformanceMonitor()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )

    async def fetch(self, key: str) -> FetchResult:
        """
        Fetch the snapshot for a key, falling back through the endpoint list.

        Parameters
        ----------
        key : str
            Portfolio key (wallet address)

        Returns
        -------
        FetchResult
            Snapshot tagged with the endpoint that served it

        Raises
        ------
        AllEndpointsFailedError
            If every endpoint failed

        """
        stop_total = safe_timer(self.monitor, "api-call")
        try:
            return await self._fetch_in_order(key)
        finally:
            stop_total()

    async def _fetch_in_order(self, key: str) -> FetchResult:
        last_error: PortfolioReadError | None = None
        attempts: list[tuple[str, BaseException]] = []

        for base_url in self.endpoints:
            logger.debug("API trying: %s%s?address=%s", base_url, self.PATH, key)
            stop_timer = safe_timer(self.monitor, f"lp-positions-{endpoint_label(base_url)}")
            try:
                snapshot = await self.fetch_from(base_url, key)
            except PortfolioReadError as e:
                last_error = e
                attempts.append((base_url, e))
                logger.warning("API failed %s: %s", base_url, e)
                safe_record(self.monitor, "api-failure")
                continue
            finally:
                stop_timer()

            logger.debug("API success: %s returned %d positions", base_url, len(snapshot.lp_positions))
            safe_record(self.monitor, "api-success")
            return FetchResult(snapshot=snapshot, endpoint=base_url)

        raise AllEndpointsFailedError(last_error, attempts)

    async def fetch_from(self, base_url: str, key: str) -> PortfolioSnapshot:
        """
        Issue one bounded request against a single endpoint.

        Parameters
        ----------
        base_url : str
            Endpoint base URL
        key : str
            Portfolio key (wallet address)

        Returns
        -------
        PortfolioSnapshot
            Validated snapshot

        Raises
        ------
        TierTimeoutError
            If the endpoint did not answer within the timeout
        TransportError
            On connection failures and non-2xx responses
        SnapshotValidationError
            If the body is not a well-formed snapshot

        """
        url = f"{base_url}{self.PATH}"
        try:
            response = await asyncio.wait_for(
                self.client.get(url, params={"address": key}),
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TierTimeoutError(f"Endpoint {base_url}", self.timeout) from e
        except httpx.HTTPStatusError as e:
            msg = f"HTTP {e.response.status_code} from {base_url}: {e.response.reason_phrase}"
            raise TransportError(msg, status_code=e.response.status_code) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            msg = f"HTTP request to {base_url} failed: {e}"
            raise TransportError(msg) from e
        except ValueError as e:
            msg = f"Response from {base_url} is not valid JSON"
            raise SnapshotValidationError(msg) from e

        return parse_snapshot(body, source=base_url)

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "EndpointFallbackFetcher":
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object | None) -> None:
        await self.aclose()
