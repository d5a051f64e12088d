"""Core models and configuration for the portfolio read path."""

from lp_portfolio_tracker.core.config import ReadPathConfig
from lp_portfolio_tracker.core.models import (
    BackupRecord,
    DataQuality,
    GlobalSummary,
    OutcomeSource,
    PoolDescriptor,
    PortfolioSnapshot,
    PortfolioSummary,
    Position,
    ResolutionOutcome,
    TokenBreakdown,
    TokenLeg,
)

__all__ = [
    "BackupRecord",
    "DataQuality",
    "GlobalSummary",
    "OutcomeSource",
    "PoolDescriptor",
    "PortfolioSnapshot",
    "PortfolioSummary",
    "Position",
    "ReadPathConfig",
    "ResolutionOutcome",
    "TokenBreakdown",
    "TokenLeg",
]
