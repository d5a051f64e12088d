"""Explicit configuration for the portfolio read path."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class ReadPathConfig(BaseModel):
    """
    Read path configuration, built once by the composing application.

    Attributes
    ----------
    api_urls : list[str]
        Ordered base URLs of the portfolio API; order is the fallback order
    cache_timeout : float
        Client-side bound on remote cache calls, in seconds
    endpoint_timeout : float
        Bound on each endpoint attempt, in seconds
    cache_ttl : int
        TTL for snapshots written to the remote cache, in seconds
    backup_max_age : float
        Backups older than this many seconds are ignored
    backup_dir : Path
        Directory for local backups
    redis_url : str | None
        Remote cache URL. An in-process cache is used when None.
    stale_time : float
        Seconds a query result stays fresh
    gc_time : float
        Seconds an unused query result is kept before eviction
    refetch_interval : float
        Seconds between automatic refreshes of subscribed keys
    max_retries : int
        Query-layer retries after the first failed resolution
    retry_base_delay : float
        First retry delay in seconds
    retry_max_delay : float
        Upper bound on retry delay in seconds
    ws_urls : list[str]
        Ordered Socket.IO URLs of the update push channel
    ws_connect_timeout : float
        Bound on each push channel connection attempt, in seconds
    ws_max_reconnects : int
        Reconnect rounds before the push channel gives up
    ws_reconnect_delay : float
        First reconnect delay in seconds, doubled every round

    """

    api_urls: list[str] = Field(min_length=1)
    cache_timeout: float = Field(default=2.0, gt=0)
    endpoint_timeout: float = Field(default=45.0, gt=0)
    cache_ttl: int = Field(default=300, gt=0)
    backup_max_age: float = Field(default=24 * 60 * 60, gt=0)
    backup_dir: Path = Field(default_factory=lambda: Path.home() / ".lp-portfolio" / "backups")
    redis_url: str | None = None
    stale_time: float = Field(default=5 * 60, ge=0)
    gc_time: float = Field(default=30 * 60, ge=0)
    refetch_interval: float = Field(default=60, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    ws_urls: list[str] = Field(default_factory=list)
    ws_connect_timeout: float = Field(default=5.0, gt=0)
    ws_max_reconnects: int = Field(default=5, ge=0)
    ws_reconnect_delay: float = Field(default=1.0, ge=0)

    @field_validator("api_urls")
    @classmethod
    def _normalize_urls(cls, urls: list[str]) -> list[str]:
        normalized = [url.strip().rstrip("/") for url in urls if url and url.strip()]
        if not normalized:
            msg = "at least one API URL is required"
            raise ValueError(msg)
        return normalized

    @field_validator("ws_urls")
    @classmethod
    def _normalize_ws_urls(cls, urls: list[str]) -> list[str]:
        return [url.strip().rstrip("/") for url in urls if url and url.strip()]
