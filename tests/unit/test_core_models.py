"""
tests/unit/test_core_models.py - Tests for core data models.
"""

import pytest
from dataclasses import FrozenInstanceError
from decimal import Decimal

from core.constants import ZERO_ADDRESS
from core.models import Exposure, ExposureKind, LiquidationRecord, Market, Opportunity, Position

USDT = Market("vUSDT", "0xfD5840Cd36d94D7229439859C0112a4185BC0255", "0x55d398326f99059fF775485246999027B3197955", 18)
USDC6 = Market("vUSDC", "0xecA88125a5ADbe82614ffC12D0DB554E2e2867C8", "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 6)
BNB = Market("vBNB", "0xA07c5b74C9B40447a954e1466938b865b6BBea36")


class TestMarket:

    def test_native_market(self):
        assert BNB.underlying == ZERO_ADDRESS
        assert BNB.is_native
        assert not USDT.is_native

    def test_frozen(self):
        with pytest.raises(FrozenInstanceError):
            USDT.symbol = "other"


class TestExposure:

    def test_value(self):
        exposure = Exposure(ExposureKind.DEBT, USDT, Decimal("250"), Decimal("1.01"))
        assert exposure.value == Decimal("252.50")


class TestPosition:

    def test_defaults(self):
        position = Position("0xabc")
        assert position.has_debt
        assert position.last_verified_ms is None
        assert position.first_seen_ms <= position.last_seen_ms

    def test_touch_updates_last_seen(self):
        position = Position("0xabc", first_seen_ms=1, last_seen_ms=1)
        position.touch()
        assert position.last_seen_ms > 1
        assert position.first_seen_ms == 1


def _opportunity(market: Market, repay: str) -> Opportunity:
    return Opportunity(
        borrower="0xabc",
        debt_market=market,
        collateral_market=BNB,
        repay_amount=Decimal(repay),
        expected_collateral=Decimal("3.6"),
        net_profit=Decimal("68.3"),
        net_profit_native=Decimal("0.22766"),
        shortfall=Decimal("12"),
        gas_price_wei=5 * 10**9,
        swap_fee=2500,
        min_out_bps=100,
    )


class TestOpportunity:

    def test_repay_amount_raw_uses_debt_decimals(self):
        assert _opportunity(USDC6, "1000.5").repay_amount_raw == 1_000_500_000
        assert _opportunity(USDT, "1000").repay_amount_raw == 1000 * 10**18

    def test_to_dict_serializes_decimals_as_strings(self):
        data = _opportunity(USDT, "1000").to_dict()
        assert data["debt_market"] == "vUSDT"
        assert data["collateral_market"] == "vBNB"
        assert data["repay_amount"] == "1000"
        assert data["net_profit_native"] == "0.22766"
        assert data["gas_price_wei"] == 5 * 10**9


class TestLiquidationRecord:

    def test_immutable(self):
        record = LiquidationRecord("0xhash", "0xabc", "vUSDT", "vBNB", "1000", "0.2")
        with pytest.raises(FrozenInstanceError):
            record.tx_hash = "0xother"
        assert record.gas_used is None
        assert record.timestamp_ms > 0
