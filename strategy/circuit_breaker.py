"""
strategy/circuit_breaker.py - Price-feed circuit breaker.

Trips when the newest oracle price for any tracked market moves more than
`max_change_percent` from the previous sample, or when a price read fails.
Once tripped it stays tripped: check_prices() returns False without touching
the network until an operator calls reset().
"""

from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from core.constants import (
    DEFAULT_MAX_PRICE_CHANGE_PERCENT,
    DEFAULT_PRICE_HISTORY_SIZE,
    CircuitState,
)
from core.exceptions import LiqbotError
from core.logging import get_logger
from core.math import oracle_price_to_decimal, percent_change
from core.time import now_iso
from lending.venus import VenusAdapter
from monitoring.notifier import Notifier, NullNotifier

logger = get_logger("liqbot.circuit_breaker")


@dataclass
class TripInfo:
    """Why and when the breaker tripped."""
    reason: str
    tripped_at: str
    market: Optional[str] = None


class CircuitBreaker:
    """Safety interlock over oracle prices."""

    def __init__(
        self,
        adapter: VenusAdapter,
        notifier: Optional[Notifier] = None,
        max_change_percent: Decimal = Decimal(DEFAULT_MAX_PRICE_CHANGE_PERCENT),
        history_size: int = DEFAULT_PRICE_HISTORY_SIZE,
    ):
        self.adapter = adapter
        self.notifier = notifier or NullNotifier()
        self.max_change_percent = Decimal(str(max_change_percent))
        self.history_size = history_size
        self.state = CircuitState.OPERATIONAL
        self.trip_info: Optional[TripInfo] = None
        self.history: Dict[str, deque] = {}
        self.trip_count = 0

    def is_operational(self) -> bool:
        return self.state == CircuitState.OPERATIONAL

    def _sample(self, market_address: str, price: Decimal) -> None:
        samples = self.history.get(market_address)
        if samples is None:
            samples = deque(maxlen=self.history_size)
            self.history[market_address] = samples
        samples.append(price)

    async def initialize(self) -> int:
        """
        Seed one price sample per market.

        Read failures are logged per market and leave that market unseeded.

        Returns:
            Number of markets seeded
        """
        try:
            results = await self.adapter.get_prices()
        except LiqbotError as e:
            logger.error(f"Circuit breaker seed read failed: {e}")
            return 0

        seeded = 0
        for market in self.adapter.markets:
            result = results.get(market.address)
            if result is None or not result.ok or result.value == 0:
                logger.warning(
                    f"No seed price for {market.symbol}",
                    extra={"context": {"market": market.address}},
                )
                continue
            self._sample(market.address, oracle_price_to_decimal(result.value, market.decimals))
            seeded += 1

        logger.info(
            "Circuit breaker initialized",
            extra={"context": {"markets": seeded, "max_change_percent": str(self.max_change_percent)}},
        )
        return seeded

    async def check_prices(self) -> bool:
        """
        Read current prices and compare with the last sample.

        Returns:
            True if every market is within bounds (samples appended),
            False if the breaker is or becomes tripped.
        """
        if not self.is_operational():
            return False

        try:
            results = await self.adapter.get_prices()
        except LiqbotError as e:
            await self._trip(f"Price read failed: {e}")
            return False

        current: Dict[str, Decimal] = {}
        for market in self.adapter.markets:
            result = results.get(market.address)
            if result is None or not result.ok or result.value == 0:
                await self._trip(f"Price unavailable for {market.symbol}", market.symbol)
                return False

            price = oracle_price_to_decimal(result.value, market.decimals)
            samples = self.history.get(market.address)
            if samples:
                change = percent_change(samples[-1], price)
                if change > self.max_change_percent:
                    await self._trip(
                        f"{market.symbol} moved {change:.2f}% "
                        f"({samples[-1]} -> {price}), limit {self.max_change_percent}%",
                        market.symbol,
                    )
                    return False
            current[market.address] = price

        for address, price in current.items():
            self._sample(address, price)
        return True

    async def _trip(self, reason: str, market: Optional[str] = None) -> None:
        self.state = CircuitState.TRIPPED
        self.trip_info = TripInfo(reason=reason, tripped_at=now_iso(), market=market)
        self.trip_count += 1
        logger.error(
            "Circuit breaker TRIPPED",
            extra={"context": {"reason": reason, "market": market}},
        )
        await self.notifier.send(
            f"🚨 <b>Circuit breaker tripped</b>\n{reason}\nManual reset required."
        )

    async def reset(self) -> None:
        """Operator action: clear the trip and re-seed history from fresh reads."""
        previous = self.trip_info
        # stays tripped until the fresh samples are in
        self.history.clear()
        seeded = await self.initialize()
        self.state = CircuitState.OPERATIONAL
        self.trip_info = None
        logger.warning(
            "Circuit breaker reset",
            extra={"context": {
                "previous_reason": previous.reason if previous else None,
                "seeded_markets": seeded,
            }},
        )
        await self.notifier.send("✅ <b>Circuit breaker reset</b>\nDecisioning resumed.")

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.trip_info.reason if self.trip_info else None,
            "tripped_at": self.trip_info.tripped_at if self.trip_info else None,
            "trip_count": self.trip_count,
            "max_change_percent": str(self.max_change_percent),
            "markets_tracked": len(self.history),
            "latest_prices": {
                address: str(samples[-1]) for address, samples in self.history.items() if samples
            },
        }
