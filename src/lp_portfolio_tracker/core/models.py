"""Data models for LP positions, portfolio snapshots, and resolution outcomes."""

import time
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WireModel(BaseModel):
    """Base model accepting both camelCase wire names and snake_case attribute names."""

    model_config = ConfigDict(populate_by_name=True)


class TokenLeg(WireModel):
    """
    One side of a two-token liquidity position.

    Attributes
    ----------
    symbol : str
        Token symbol (e.g., 'SOL', 'USDC')
    name : str | None
        Full token name
    decimals : int
        Number of decimal places
    mint : str | None
        Token mint address
    user_amount : Decimal
        Amount of this token attributable to the user
    reserve_amount : Decimal
        Amount of this token held by the pool

    """

    symbol: str
    name: str | None = None
    decimals: int
    mint: str | None = None
    user_amount: Decimal = Field(default=Decimal("0"), alias="userAmount")
    reserve_amount: Decimal = Field(default=Decimal("0"), alias="reserveAmount")


class TokenBreakdown(WireModel):
    """Priced token breakdown of a position (the X and Y legs)."""

    token_x: TokenLeg = Field(alias="tokenX")
    token_y: TokenLeg = Field(alias="tokenY")


class PoolDescriptor(WireModel):
    """
    Pool the position belongs to.

    Only ``name`` and ``bin_step`` are typed; any other pool fields the
    server sends are preserved as extras.

    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str | None = None
    bin_step: int | None = None


class Position(WireModel):
    """
    A single liquidity-provider stake.

    Attributes
    ----------
    mint : str
        Position (or LP token) mint identifier
    protocol : str
        Protocol tag (e.g., 'orca', 'meteora', 'raydium')
    amount : str
        Raw amount as a decimal string, kept verbatim for display precision
    pool : PoolDescriptor | None
        Pool descriptor
    token_info : TokenBreakdown | None
        Priced token legs
    value_usd : Decimal | None
        Computed USD value. None means the price is unknown, not zero.
    token_x_value_usd : Decimal | None
        USD value of the X leg
    token_y_value_usd : Decimal | None
        USD value of the Y leg
    last_price_update : datetime | None
        When the price was last refreshed server-side
    metrics : dict[str, Any]
        Protocol-specific metrics bag, never interpreted by the read path

    """

    mint: str
    protocol: str
    amount: str
    pool: PoolDescriptor | None = None
    token_info: TokenBreakdown | None = Field(default=None, alias="tokenInfo")
    value_usd: Decimal | None = Field(default=None, alias="valueUSD")
    token_x_value_usd: Decimal | None = Field(default=None, alias="tokenXValueUSD")
    token_y_value_usd: Decimal | None = Field(default=None, alias="tokenYValueUSD")
    last_price_update: datetime | None = Field(default=None, alias="lastPriceUpdate")
    metrics: dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_string(cls, value: Any) -> Any:
        # bool is an int subclass; leave it for pydantic to reject
        if isinstance(value, bool):
            return value
        if isinstance(value, int | Decimal):
            return str(value)
        if isinstance(value, float):
            return repr(value)
        return value

    @field_validator("metrics", mode="before")
    @classmethod
    def _metrics_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def has_price(self) -> bool:
        """Whether a USD value is known for this position."""
        return self.value_usd is not None


class PortfolioSummary(WireModel):
    """
    Derived aggregates over a snapshot's positions.

    Attributes
    ----------
    total_positions : int
        Number of positions
    protocols : list[str]
        Distinct protocol tags, in first-seen order
    total_value_usd : Decimal
        Sum of known position USD values
    positions_with_prices : int
        Number of positions with a known USD value

    """

    total_positions: int = Field(default=0, alias="totalPositions")
    protocols: list[str] = Field(default_factory=list)
    total_value_usd: Decimal = Field(default=Decimal("0"), alias="totalValueUSD")
    positions_with_prices: int = Field(default=0, alias="positionsWithPrices")

    @classmethod
    def from_positions(cls, positions: list[Position]) -> "PortfolioSummary":
        """
        Recompute the summary from a list of positions.

        Parameters
        ----------
        positions : list[Position]
            Positions to aggregate

        Returns
        -------
        PortfolioSummary
            Aggregated summary

        """
        total_usd = Decimal("0")
        protocols: dict[str, None] = {}
        priced = 0

        for position in positions:
            protocols.setdefault(position.protocol, None)
            if position.value_usd is not None:
                total_usd += position.value_usd
                priced += 1

        return cls(
            total_positions=len(positions),
            protocols=list(protocols),
            total_value_usd=total_usd,
            positions_with_prices=priced,
        )


class PortfolioSnapshot(WireModel):
    """
    Full set of positions for one key at one point in time.

    Attributes
    ----------
    lp_positions : list[Position]
        Ordered positions
    summary : PortfolioSummary | None
        Server-provided summary, if any. Never authoritative.

    """

    lp_positions: list[Position] = Field(alias="lpPositions")
    summary: PortfolioSummary | None = None

    @classmethod
    def empty(cls) -> "PortfolioSnapshot":
        """Snapshot with no positions and a zeroed summary."""
        return cls(lp_positions=[], summary=PortfolioSummary())

    @property
    def is_empty(self) -> bool:
        return not self.lp_positions

    def effective_summary(self) -> PortfolioSummary:
        """Return the attached summary, or recompute one from the positions."""
        if self.summary is not None:
            return self.summary
        return PortfolioSummary.from_positions(self.lp_positions)

    def to_json(self) -> str:
        """Serialize using wire (camelCase) names."""
        return self.model_dump_json(by_alias=True)


class BackupRecord(WireModel):
    """
    Locally persisted copy of the last successfully fetched snapshot.

    Attributes
    ----------
    key : str
        Portfolio key the record belongs to
    data : PortfolioSnapshot
        Snapshot captured after a confirmed remote success
    timestamp : int
        Capture time in epoch milliseconds

    """

    key: str
    data: PortfolioSnapshot
    timestamp: int

    @property
    def captured_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=UTC)

    def age_seconds(self, now: float | None = None) -> float:
        """
        Age of the record in seconds.

        Parameters
        ----------
        now : float | None
            Current epoch time in seconds. Uses ``time.time()`` if None.

        Returns
        -------
        float
            Seconds elapsed since capture

        """
        current = time.time() if now is None else now
        return current - self.timestamp / 1000


class OutcomeSource(StrEnum):
    """Which tier produced a resolution result."""

    CACHE_HIT = "cache_hit"
    REMOTE_HIT = "remote_hit"
    BACKUP_HIT = "backup_hit"
    EMPTY = "empty"


class DataQuality(StrEnum):
    """How far a result can be trusted to be current."""

    FRESH = "fresh"
    CACHED = "cached"
    BACKUP = "backup"
    EMPTY_FALLBACK = "empty-fallback"


_QUALITY_BY_SOURCE = {
    OutcomeSource.CACHE_HIT: DataQuality.CACHED,
    OutcomeSource.REMOTE_HIT: DataQuality.FRESH,
    OutcomeSource.BACKUP_HIT: DataQuality.BACKUP,
    OutcomeSource.EMPTY: DataQuality.EMPTY_FALLBACK,
}


class ResolutionOutcome(BaseModel):
    """
    Tagged result of one resolution attempt.

    Attributes
    ----------
    source : OutcomeSource
        Tier that produced the snapshot
    snapshot : PortfolioSnapshot
        Resolved snapshot, always well-formed
    endpoint : str | None
        Base URL that served a remote hit
    age_seconds : float | None
        Age of a backup hit
    resolved_at : datetime
        When the resolution finished

    """

    source: OutcomeSource
    snapshot: PortfolioSnapshot
    endpoint: str | None = None
    age_seconds: float | None = None
    resolved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def data_quality(self) -> DataQuality:
        return _QUALITY_BY_SOURCE[self.source]

    @property
    def is_stale_data(self) -> bool:
        """True when the snapshot may not reflect the current portfolio."""
        return self.source in (OutcomeSource.BACKUP_HIT, OutcomeSource.EMPTY)

    @classmethod
    def cache_hit(cls, snapshot: PortfolioSnapshot) -> "ResolutionOutcome":
        return cls(source=OutcomeSource.CACHE_HIT, snapshot=snapshot)

    @classmethod
    def remote_hit(cls, snapshot: PortfolioSnapshot, endpoint: str) -> "ResolutionOutcome":
        return cls(source=OutcomeSource.REMOTE_HIT, snapshot=snapshot, endpoint=endpoint)

    @classmethod
    def backup_hit(cls, snapshot: PortfolioSnapshot, age_seconds: float) -> "ResolutionOutcome":
        return cls(source=OutcomeSource.BACKUP_HIT, snapshot=snapshot, age_seconds=age_seconds)

    @classmethod
    def empty(cls) -> "ResolutionOutcome":
        return cls(source=OutcomeSource.EMPTY, snapshot=PortfolioSnapshot.empty())


class GlobalSummary(BaseModel):
    """
    Totals across every portfolio currently held by the query cache.

    Attributes
    ----------
    total_value_usd : Decimal
        Sum of known USD values across all addresses
    total_positions : int
        Number of positions across all addresses
    total_protocols : int
        Number of distinct protocols across all addresses
    total_addresses : int
        Number of addresses with cached data

    """

    total_value_usd: Decimal = Decimal("0")
    total_positions: int = 0
    total_protocols: int = 0
    total_addresses: int = 0
