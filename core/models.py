# PATH: core/models.py
"""
Core data models for LIQBOT.

Money is Decimal in whole-token units; raw on-chain integers are only
produced at the settlement boundary (see Opportunity.repay_amount_raw).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from core.constants import ZERO_ADDRESS
from core.math import denormalize_from_decimals
from core.time import now_ms


@dataclass(frozen=True)
class Market:
    """A lending market (vToken) and its underlying asset."""
    symbol: str
    address: str
    underlying: str = ZERO_ADDRESS
    decimals: int = 18

    @property
    def is_native(self) -> bool:
        return self.underlying == ZERO_ADDRESS


@dataclass
class Position:
    """A tracked borrower account."""
    address: str
    has_debt: bool = True
    first_seen_ms: int = field(default_factory=now_ms)
    last_seen_ms: int = field(default_factory=now_ms)
    last_verified_ms: Optional[int] = None

    def touch(self) -> None:
        self.last_seen_ms = now_ms()


class ExposureKind(str, Enum):
    DEBT = "DEBT"
    COLLATERAL = "COLLATERAL"


@dataclass(frozen=True)
class Exposure:
    """
    Amount owed or held in one market, priced by the protocol oracle.

    `amount` is in underlying token units, `price` in USD per token.
    """
    kind: ExposureKind
    market: Market
    amount: Decimal
    price: Decimal

    @property
    def value(self) -> Decimal:
        return self.amount * self.price


@dataclass
class Opportunity:
    """A candidate liquidation, emitted only when profitable."""
    borrower: str
    debt_market: Market
    collateral_market: Market
    repay_amount: Decimal
    expected_collateral: Decimal
    net_profit: Decimal          # in debt-token units
    net_profit_native: Decimal   # in gas-paying asset units
    shortfall: Decimal           # USD
    gas_price_wei: int
    swap_fee: int
    min_out_bps: int
    breakdown: Dict[str, str] = field(default_factory=dict)
    detected_at_ms: int = field(default_factory=now_ms)

    @property
    def repay_amount_raw(self) -> int:
        return denormalize_from_decimals(self.repay_amount, self.debt_market.decimals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "borrower": self.borrower,
            "debt_market": self.debt_market.symbol,
            "collateral_market": self.collateral_market.symbol,
            "repay_amount": str(self.repay_amount),
            "expected_collateral": str(self.expected_collateral),
            "net_profit": str(self.net_profit),
            "net_profit_native": str(self.net_profit_native),
            "shortfall": str(self.shortfall),
            "gas_price_wei": self.gas_price_wei,
            "detected_at_ms": self.detected_at_ms,
        }


@dataclass(frozen=True)
class LiquidationRecord:
    """Immutable fact about a confirmed liquidation. Keyed by tx_hash."""
    tx_hash: str
    borrower: str
    debt_market: str
    collateral_market: str
    repay_amount: str
    profit_native: str
    gas_used: Optional[int] = None
    timestamp_ms: int = field(default_factory=now_ms)
