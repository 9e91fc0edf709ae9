"""
strategy/scanner.py - Concurrency-bounded opportunity scan.

One cycle:
1. Skip if the circuit breaker is not operational
2. Snapshot the registry and take up to `max_borrowers_per_scan` candidates
   with a round-robin cursor, so large registries are covered fairly
3. Evaluate candidates concurrently under a semaphore
4. Return opportunities in candidate order

A failing candidate is logged and yields nothing; the cycle continues.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from core.constants import (
    DEFAULT_GAS_LIMIT,
    DEFAULT_MAX_BORROWERS_PER_SCAN,
    DEFAULT_MAX_CONCURRENT_CHECKS,
    DEFAULT_MAX_LIQUIDATION_SIZE_NATIVE,
    DEFAULT_MIN_OUT_BPS,
    DEFAULT_MIN_PROFIT_NATIVE,
    DEFAULT_SWAP_FEE_TIER,
    DEFAULT_SWAP_SLIPPAGE,
    RejectReason,
)
from core.exceptions import LiqbotError
from core.logging import get_logger
from core.math import health_factor
from core.models import Exposure, Opportunity
from discovery.registry import PositionRegistry
from lending.venus import AccountSnapshot, VenusAdapter
from strategy.circuit_breaker import CircuitBreaker
from strategy.profitability import compute_repay_amount, estimate_profit

logger = get_logger("liqbot.scanner")


@dataclass
class ScanResult:
    opportunities: list[Opportunity] = field(default_factory=list)
    candidates: int = 0
    tracked: int = 0
    rejects: Counter = field(default_factory=Counter)
    skipped: Optional[str] = None


def _largest(exposures: list[Exposure]) -> Exposure:
    """Largest by value; ties keep the first in market order."""
    best = exposures[0]
    for exposure in exposures[1:]:
        if exposure.value > best.value:
            best = exposure
    return best


class OpportunityScanner:
    """Finds profitable liquidations among tracked borrowers."""

    def __init__(
        self,
        registry: PositionRegistry,
        adapter: VenusAdapter,
        breaker: CircuitBreaker,
        min_profit_native: Decimal = DEFAULT_MIN_PROFIT_NATIVE,
        max_liquidation_size_native: Decimal = DEFAULT_MAX_LIQUIDATION_SIZE_NATIVE,
        swap_slippage: Decimal = DEFAULT_SWAP_SLIPPAGE,
        gas_units: int = DEFAULT_GAS_LIMIT,
        swap_fee: int = DEFAULT_SWAP_FEE_TIER,
        min_out_bps: int = DEFAULT_MIN_OUT_BPS,
        max_concurrent_checks: int = DEFAULT_MAX_CONCURRENT_CHECKS,
        max_borrowers_per_scan: int = DEFAULT_MAX_BORROWERS_PER_SCAN,
        should_stop: Callable[[], bool] = lambda: False,
    ):
        self.registry = registry
        self.adapter = adapter
        self.breaker = breaker
        self.min_profit_native = Decimal(str(min_profit_native))
        self.max_liquidation_size_native = Decimal(str(max_liquidation_size_native))
        self.swap_slippage = Decimal(str(swap_slippage))
        self.gas_units = gas_units
        self.swap_fee = swap_fee
        self.min_out_bps = min_out_bps
        self.max_concurrent_checks = max(1, max_concurrent_checks)
        self.max_borrowers_per_scan = max_borrowers_per_scan
        self.should_stop = should_stop
        self._cursor = 0
        self.scans = 0

    def select_candidates(self, snapshot: list[str]) -> list[str]:
        """Round-robin window of at most `max_borrowers_per_scan` addresses."""
        cap = self.max_borrowers_per_scan
        if cap <= 0 or len(snapshot) <= cap:
            self._cursor = 0
            return list(snapshot)

        start = self._cursor % len(snapshot)
        window = [snapshot[(start + i) % len(snapshot)] for i in range(cap)]
        self._cursor = (start + cap) % len(snapshot)
        return window

    async def scan(self) -> ScanResult:
        result = ScanResult()
        if not self.breaker.is_operational():
            result.skipped = "circuit_breaker"
            return result

        snapshot = self.registry.snapshot()
        result.tracked = len(snapshot)
        candidates = self.select_candidates(snapshot)
        result.candidates = len(candidates)
        if not candidates or self.should_stop():
            result.skipped = "stopped" if candidates else "empty"
            return result

        gas_price_wei = await self.adapter.gas_price_wei()
        if self.should_stop():
            result.skipped = "stopped"
            return result

        semaphore = asyncio.Semaphore(self.max_concurrent_checks)

        async def guarded(borrower: str):
            async with semaphore:
                if self.should_stop():
                    return None, RejectReason.STOPPED
                return await self.evaluate_safe(borrower, gas_price_wei)

        outcomes = await asyncio.gather(*(guarded(b) for b in candidates))
        for opportunity, reason in outcomes:
            if opportunity is not None:
                result.opportunities.append(opportunity)
            else:
                result.rejects[reason] += 1

        self.scans += 1
        logger.info(
            "Scan complete",
            extra={"context": {
                "tracked": result.tracked,
                "candidates": result.candidates,
                "opportunities": len(result.opportunities),
                "rejects": {k.value: v for k, v in result.rejects.items()},
                "gas_price_wei": gas_price_wei,
            }},
        )
        return result

    async def evaluate_safe(
        self,
        borrower: str,
        gas_price_wei: int,
    ) -> tuple[Optional[Opportunity], Optional[RejectReason]]:
        try:
            return await self.evaluate(borrower, gas_price_wei)
        except LiqbotError as e:
            logger.warning(
                f"Candidate evaluation failed: {e}",
                extra={"context": {"borrower": borrower}},
            )
        except Exception:
            logger.exception(
                "Unexpected error evaluating candidate",
                extra={"context": {"borrower": borrower}},
            )
        return None, RejectReason.READ_FAILED

    async def evaluate(
        self,
        borrower: str,
        gas_price_wei: int,
    ) -> tuple[Optional[Opportunity], Optional[RejectReason]]:
        snapshot = await self.adapter.account_snapshot(borrower)
        return self.assess(snapshot, gas_price_wei)

    def assess(
        self,
        snapshot: AccountSnapshot,
        gas_price_wei: int,
    ) -> tuple[Optional[Opportunity], Optional[RejectReason]]:
        """Decide on one borrower from an already-read snapshot."""
        if snapshot.shortfall <= 0:
            return None, RejectReason.NO_SHORTFALL
        if not snapshot.debts:
            return None, RejectReason.NO_DEBT
        if not snapshot.collaterals:
            return None, RejectReason.NO_COLLATERAL

        debt = _largest(snapshot.debts)
        collateral = _largest(snapshot.collaterals)
        native_price = snapshot.prices.get(self.adapter.native_market.address, Decimal("0"))
        if debt.price == 0 or collateral.price == 0 or native_price == 0:
            return None, RejectReason.MISSING_PRICE

        repay = compute_repay_amount(
            debt_amount=debt.amount,
            close_factor=snapshot.close_factor,
            max_size_native=self.max_liquidation_size_native,
            native_price=native_price,
            debt_price=debt.price,
        )
        estimate = estimate_profit(
            repay_amount=repay,
            debt_price=debt.price,
            collateral_price=collateral.price,
            liquidation_incentive=snapshot.liquidation_incentive,
            native_price=native_price,
            gas_price_wei=gas_price_wei,
            gas_units=self.gas_units,
            slippage=self.swap_slippage,
        )

        if not estimate.exceeds(self.min_profit_native):
            logger.debug(
                "Below profit threshold",
                extra={"context": {
                    "borrower": snapshot.borrower,
                    "net_profit_native": str(estimate.net_profit_native),
                }},
            )
            return None, RejectReason.PNL_BELOW_THRESHOLD

        health = health_factor(
            sum((e.value for e in snapshot.collaterals), Decimal("0")),
            sum((e.value for e in snapshot.debts), Decimal("0")),
        )
        opportunity = Opportunity(
            borrower=snapshot.borrower,
            debt_market=debt.market,
            collateral_market=collateral.market,
            repay_amount=repay,
            expected_collateral=estimate.expected_collateral,
            net_profit=estimate.net_profit,
            net_profit_native=estimate.net_profit_native,
            shortfall=snapshot.shortfall,
            gas_price_wei=gas_price_wei,
            swap_fee=self.swap_fee,
            min_out_bps=self.min_out_bps,
            breakdown={**estimate.breakdown(), "health_factor": str(health)},
        )
        logger.info(
            "Opportunity found",
            extra={"context": {**opportunity.to_dict(), "health_factor": str(health)}},
        )
        return opportunity, None
