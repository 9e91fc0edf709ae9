# PATH: core/math.py
"""
Math utilities for LIQBOT.

Safe conversions between on-chain integers and Decimal amounts. No float money.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union

from core.constants import MANTISSA_ONE

Number = Union[str, int, float, Decimal]


def safe_decimal(value: Union[Number, None], default: Decimal = Decimal("0")) -> Decimal:
    """
    Safely convert value to Decimal.

    Args:
        value: Value to convert
        default: Default if conversion fails

    Returns:
        Decimal value
    """
    if value is None:
        return default

    try:
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default


def mantissa_to_decimal(mantissa: int) -> Decimal:
    """Convert a 1e18-scaled protocol mantissa to Decimal (1.08e18 -> 1.08)."""
    return Decimal(mantissa) / Decimal(MANTISSA_ONE)


def normalize_to_decimals(amount: Union[int, str, Decimal], decimals: int) -> Decimal:
    """Convert smallest-unit integer amount to token units."""
    return safe_decimal(amount) / (Decimal(10) ** decimals)


def denormalize_from_decimals(amount: Number, decimals: int) -> int:
    """Convert token units to smallest-unit integer, rounding down."""
    scaled = safe_decimal(amount) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def oracle_price_to_decimal(raw_price: int, underlying_decimals: int) -> Decimal:
    """
    Convert a Compound-style oracle price to USD per whole token.

    getUnderlyingPrice returns price scaled by 1e(36 - underlying decimals).
    """
    return Decimal(raw_price) / (Decimal(10) ** (36 - underlying_decimals))


def percent_change(previous: Decimal, current: Decimal) -> Decimal:
    """
    Absolute percentage change from previous to current.

    A zero previous value yields 0: there is no meaningful baseline.
    """
    if previous == 0:
        return Decimal("0")
    return abs(current - previous) / previous * Decimal("100")


def health_factor(collateral_value: Decimal, debt_value: Decimal) -> Optional[Decimal]:
    """
    Health factor = collateral value / debt value.

    Returns None for a position without debt (infinite health).
    """
    if debt_value == 0:
        return None
    return collateral_value / debt_value


def convert_value(
    amount: Decimal,
    from_price: Decimal,
    to_price: Decimal,
) -> Decimal:
    """Convert an amount of one asset into another via their USD prices."""
    if to_price == 0:
        return Decimal("0")
    return amount * from_price / to_price
