"""
strategy/profitability.py - Liquidation sizing and PnL estimate.

Pure Decimal math, no I/O. Amounts are whole-token units, prices are USD
per whole token as reported by the protocol oracle.

    repay      = min(debt * close_factor, max_size_native in debt units)
    collateral = repay * debt_price * incentive / collateral_price
    proceeds   = collateral in debt units * (1 - slippage)
    net        = proceeds - repay - gas (in debt units)
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

from core.constants import WEI_PER_NATIVE
from core.math import convert_value

ZERO = Decimal("0")


def compute_repay_amount(
    debt_amount: Decimal,
    close_factor: Decimal,
    max_size_native: Decimal,
    native_price: Decimal,
    debt_price: Decimal,
) -> Decimal:
    """Largest repay allowed by the close factor and the local size cap."""
    by_close_factor = debt_amount * close_factor
    cap = convert_value(max_size_native, native_price, debt_price)
    return min(by_close_factor, cap)


def expected_collateral(
    repay_amount: Decimal,
    debt_price: Decimal,
    liquidation_incentive: Decimal,
    collateral_price: Decimal,
) -> Decimal:
    """Collateral seized for a repay, in collateral-token units."""
    if collateral_price == 0:
        return ZERO
    return repay_amount * debt_price * liquidation_incentive / collateral_price


@dataclass(frozen=True)
class ProfitEstimate:
    repay_amount: Decimal
    expected_collateral: Decimal
    proceeds: Decimal           # debt units, after slippage
    slippage_cost: Decimal      # debt units
    gas_cost_native: Decimal
    gas_cost: Decimal           # debt units
    net_profit: Decimal         # debt units
    net_profit_native: Decimal

    @property
    def roi_bps(self) -> int:
        if self.repay_amount == 0:
            return 0
        return int(self.net_profit / self.repay_amount * Decimal("10000"))

    def exceeds(self, min_profit_native: Decimal) -> bool:
        return self.net_profit_native > min_profit_native

    def breakdown(self) -> Dict[str, str]:
        return {
            "repay_amount": str(self.repay_amount),
            "expected_collateral": str(self.expected_collateral),
            "proceeds": str(self.proceeds),
            "slippage_cost": str(self.slippage_cost),
            "gas_cost_native": str(self.gas_cost_native),
            "gas_cost": str(self.gas_cost),
            "net_profit": str(self.net_profit),
            "net_profit_native": str(self.net_profit_native),
            "roi_bps": str(self.roi_bps),
        }


def estimate_profit(
    repay_amount: Decimal,
    debt_price: Decimal,
    collateral_price: Decimal,
    liquidation_incentive: Decimal,
    native_price: Decimal,
    gas_price_wei: int,
    gas_units: int,
    slippage: Decimal,
) -> ProfitEstimate:
    """
    Net profit of liquidating `repay_amount` of debt.

    Gas is paid in the native asset and converted to debt units through the
    oracle prices; the result is reported in both units.
    """
    collateral = expected_collateral(repay_amount, debt_price, liquidation_incentive, collateral_price)
    collateral_in_debt = convert_value(collateral, collateral_price, debt_price)
    slippage_cost = collateral_in_debt * slippage
    proceeds = collateral_in_debt - slippage_cost

    gas_cost_native = Decimal(gas_units * gas_price_wei) / Decimal(WEI_PER_NATIVE)
    gas_cost = convert_value(gas_cost_native, native_price, debt_price)

    net_profit = proceeds - repay_amount - gas_cost
    net_profit_native = convert_value(net_profit, debt_price, native_price)

    return ProfitEstimate(
        repay_amount=repay_amount,
        expected_collateral=collateral,
        proceeds=proceeds,
        slippage_cost=slippage_cost,
        gas_cost_native=gas_cost_native,
        gas_cost=gas_cost,
        net_profit=net_profit,
        net_profit_native=net_profit_native,
    )
