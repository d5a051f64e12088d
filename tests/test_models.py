"""Tests for Pydantic data models."""

import json
import time
from decimal import Decimal

import pytest
from pydantic import ValidationError

from lp_portfolio_tracker.core.models import (
    BackupRecord,
    DataQuality,
    OutcomeSource,
    PortfolioSnapshot,
    PortfolioSummary,
    Position,
    ResolutionOutcome,
)


def test_snapshot_from_wire_payload(snapshot):
    """Test parsing a full /lp-positions body."""
    assert len(snapshot.lp_positions) == 2

    first = snapshot.lp_positions[0]
    assert first.protocol == "meteora"
    assert first.amount == "1500000"
    assert first.value_usd == Decimal("3725.25")
    assert first.token_info.token_x.symbol == "SOL"
    assert first.token_info.token_y.user_amount == Decimal("1850.25")
    assert first.pool.bin_step == 10
    assert first.metrics == {"feeApr": "0.42", "inRange": True}

    assert snapshot.summary.total_positions == 2


def test_pool_extra_fields_preserved(snapshot):
    """Test that unknown pool fields survive a round trip."""
    pool = snapshot.lp_positions[0].pool
    dumped = pool.model_dump()

    assert dumped["address"] == "ARwi1S4DaiTG5DX7S4M4ZsrXqpMD1MrTmbu9ue2tpmEq"


def test_position_amount_kept_as_string():
    """Test that amounts are never coerced through float."""
    from_int = Position(mint="m", protocol="orca", amount=12345678901234567890)
    from_decimal = Position(mint="m", protocol="orca", amount=Decimal("0.000000001"))
    from_float = Position(mint="m", protocol="orca", amount=1.5)

    assert from_int.amount == "12345678901234567890"
    assert from_decimal.amount == "1E-9"
    assert from_float.amount == "1.5"


def test_position_rejects_bool_amount():
    """Test that a boolean amount is rejected."""
    with pytest.raises(ValidationError):
        Position(mint="m", protocol="orca", amount=True)


def test_position_missing_price_is_unknown_not_zero(snapshot):
    """Test that a null valueUSD means the price is unknown."""
    unpriced = snapshot.lp_positions[1]

    assert unpriced.value_usd is None
    assert not unpriced.has_price
    assert unpriced.metrics == {}


def test_position_ignores_unknown_fields():
    """Test that unknown position fields are dropped."""
    position = Position.model_validate({"mint": "m", "protocol": "raydium", "amount": "1", "apy": 12})

    assert not hasattr(position, "apy")


def test_position_null_metrics_becomes_empty():
    """Test that a null metrics bag is normalized."""
    position = Position.model_validate({"mint": "m", "protocol": "raydium", "amount": "1", "metrics": None})

    assert position.metrics == {}


def test_summary_from_positions(snapshot):
    """Test recomputing a summary from positions."""
    summary = PortfolioSummary.from_positions(snapshot.lp_positions)

    assert summary.total_positions == 2
    assert summary.protocols == ["meteora", "orca"]
    assert summary.total_value_usd == Decimal("3725.25")
    assert summary.positions_with_prices == 1


def test_summary_protocols_first_seen_order():
    """Test that protocols are distinct and keep first-seen order."""
    positions = [
        Position(mint="a", protocol="orca", amount="1", valueUSD="1"),
        Position(mint="b", protocol="meteora", amount="1", valueUSD="2"),
        Position(mint="c", protocol="orca", amount="1", valueUSD="3"),
    ]

    summary = PortfolioSummary.from_positions(positions)

    assert summary.protocols == ["orca", "meteora"]
    assert summary.total_value_usd == Decimal("6")


def test_effective_summary_recomputes_when_missing(positions_payload):
    """Test that a snapshot without a summary derives one."""
    del positions_payload["summary"]
    snapshot = PortfolioSnapshot.model_validate(positions_payload)

    assert snapshot.summary is None
    assert snapshot.effective_summary().total_positions == 2


def test_empty_snapshot():
    """Test the empty snapshot."""
    empty = PortfolioSnapshot.empty()

    assert empty.is_empty
    assert empty.lp_positions == []
    assert empty.summary.total_positions == 0
    assert empty.summary.total_value_usd == Decimal("0")
    assert empty.summary.protocols == []


def test_snapshot_json_uses_wire_names(snapshot):
    """Test that serialization uses camelCase wire names."""
    document = json.loads(snapshot.to_json())

    assert "lpPositions" in document
    assert "tokenInfo" in document["lpPositions"][0]
    assert "valueUSD" in document["lpPositions"][0]
    assert document["summary"]["totalValueUSD"] == "3725.25"
    assert PortfolioSnapshot.model_validate_json(snapshot.to_json()) == snapshot


def test_backup_record_age(snapshot):
    """Test backup record age calculation."""
    now = time.time()
    record = BackupRecord(key="k", data=snapshot, timestamp=int((now - 600) * 1000))

    assert record.age_seconds(now) == pytest.approx(600, abs=0.01)
    assert record.captured_at.timestamp() == pytest.approx(now - 600, abs=0.01)


@pytest.mark.parametrize(
    ("outcome", "quality", "stale"),
    [
        (ResolutionOutcome.cache_hit(PortfolioSnapshot.empty()), DataQuality.CACHED, False),
        (ResolutionOutcome.remote_hit(PortfolioSnapshot.empty(), "https://api.example.com"), DataQuality.FRESH, False),
        (ResolutionOutcome.backup_hit(PortfolioSnapshot.empty(), 600.0), DataQuality.BACKUP, True),
        (ResolutionOutcome.empty(), DataQuality.EMPTY_FALLBACK, True),
    ],
)
def test_outcome_data_quality(outcome, quality, stale):
    """Test that each outcome reports how trustworthy it is."""
    assert outcome.data_quality == quality
    assert outcome.is_stale_data is stale


def test_empty_outcome_distinguishable_from_zero_positions():
    """Test that 'no data' and 'no positions' are different outcomes."""
    no_positions = ResolutionOutcome.remote_hit(PortfolioSnapshot(lp_positions=[]), "https://api.example.com")
    no_data = ResolutionOutcome.empty()

    assert no_positions.snapshot.is_empty and no_data.snapshot.is_empty
    assert no_positions.source == OutcomeSource.REMOTE_HIT
    assert no_data.source == OutcomeSource.EMPTY
