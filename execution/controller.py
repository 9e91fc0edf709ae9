"""
execution/controller.py - Sequential settlement of detected opportunities.

For each opportunity, in order:
1. Re-read shortfall; skip if no longer positive or unreadable
2. Estimate gas with a buffer, default limit if estimation fails
3. Execute once under a timeout
4. Record, count and notify; cool down after a success

Failures are recorded and reported, never raised to the loop.
"""

import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from core.constants import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_GAS_BUFFER_PERCENT,
    DEFAULT_GAS_LIMIT,
    DEFAULT_SETTLEMENT_TIMEOUT_SECONDS,
    SettlementStatus,
)
from core.exceptions import LiqbotError, StorageError
from core.logging import get_logger, short_address
from core.models import LiquidationRecord, Opportunity
from execution.settlement import SettlementAction, SettlementOutcome
from lending.venus import VenusAdapter
from monitoring.notifier import Notifier, NullNotifier
from storage.store import BorrowerStore, NullStore

logger = get_logger("liqbot.controller")

# Headroom over the settlement's own receipt timeout for nonce/send calls
SUBMIT_GRACE_SECONDS = 30.0


class ExecutionController:
    """Owns the settlement phase and its counters."""

    def __init__(
        self,
        adapter: VenusAdapter,
        settlement: SettlementAction,
        store: Optional[BorrowerStore] = None,
        notifier: Optional[Notifier] = None,
        gas_buffer_percent: int = DEFAULT_GAS_BUFFER_PERCENT,
        default_gas_limit: int = DEFAULT_GAS_LIMIT,
        settlement_timeout_seconds: float = DEFAULT_SETTLEMENT_TIMEOUT_SECONDS,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        should_stop: Callable[[], bool] = lambda: False,
        sleep: Callable = asyncio.sleep,
    ):
        self.adapter = adapter
        self.settlement = settlement
        self.store = store or NullStore()
        self.notifier = notifier or NullNotifier()
        self.gas_buffer_percent = gas_buffer_percent
        self.default_gas_limit = default_gas_limit
        self.settlement_timeout_seconds = settlement_timeout_seconds
        self.cooldown_seconds = cooldown_seconds
        self.should_stop = should_stop
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._liquidation_count = 0
        self._failure_count = 0
        self._stale_count = 0
        self._total_profit = Decimal("0")
        self.last_outcome: Optional[SettlementOutcome] = None

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    @property
    def liquidation_count(self) -> int:
        return self._liquidation_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def total_profit(self) -> Decimal:
        return self._total_profit

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "liquidations": self._liquidation_count,
            "failures": self._failure_count,
            "stale_skipped": self._stale_count,
            "total_profit_native": str(self._total_profit),
            "last_status": self.last_outcome.status.value if self.last_outcome else None,
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_all(self, opportunities: List[Opportunity]) -> List[SettlementOutcome]:
        """Settle opportunities one at a time, in the order given."""
        outcomes = []
        async with self._lock:
            for opportunity in opportunities:
                if self.should_stop():
                    logger.info("Stop requested, leaving remaining opportunities")
                    break
                outcomes.append(await self._execute_one(opportunity))
        return outcomes

    async def _execute_one(self, opportunity: Opportunity) -> SettlementOutcome:
        borrower = opportunity.borrower

        if not await self._still_eligible(borrower):
            self._stale_count += 1
            logger.info(
                "Opportunity no longer eligible",
                extra={"context": {"borrower": borrower}},
            )
            outcome = SettlementOutcome(SettlementStatus.SKIPPED_STALE)
            self.last_outcome = outcome
            return outcome

        gas_limit = await self.gas_limit_for(opportunity)

        try:
            outcome = await asyncio.wait_for(
                self.settlement.execute(opportunity, gas_limit),
                timeout=self.settlement_timeout_seconds + SUBMIT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            outcome = SettlementOutcome(
                SettlementStatus.TIMEOUT,
                error=f"Settlement exceeded {self.settlement_timeout_seconds}s",
            )
        except LiqbotError as e:
            outcome = SettlementOutcome(SettlementStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(
                "Unexpected settlement error",
                extra={"context": {"borrower": borrower}},
            )
            outcome = SettlementOutcome(SettlementStatus.FAILED, error=f"{type(e).__name__}: {e}")

        self.last_outcome = outcome

        if outcome.status == SettlementStatus.CONFIRMED:
            await self._on_success(opportunity, outcome)
        elif outcome.status == SettlementStatus.DRY_RUN:
            await self.notifier.send(
                f"🧪 <b>Dry run</b>: would liquidate {short_address(borrower)} "
                f"repay {opportunity.repay_amount} {opportunity.debt_market.symbol}, "
                f"est. profit {opportunity.net_profit_native:.4f}"
            )
        else:
            await self._on_failure(opportunity, outcome)
        return outcome

    async def _still_eligible(self, borrower: str) -> bool:
        try:
            shortfall = await self.adapter.get_shortfall(borrower)
        except LiqbotError as e:
            logger.warning(
                f"Eligibility re-check failed, skipping: {e}",
                extra={"context": {"borrower": borrower}},
            )
            return False
        return shortfall > 0

    async def gas_limit_for(self, opportunity: Opportunity) -> int:
        """Estimated gas plus buffer, or the default limit if estimation fails."""
        try:
            estimate = await self.settlement.estimate_gas(opportunity)
        except LiqbotError as e:
            logger.warning(
                f"Gas estimation failed, using default limit: {e}",
                extra={"context": {"default_gas_limit": self.default_gas_limit}},
            )
            return self.default_gas_limit
        return estimate * (100 + self.gas_buffer_percent) // 100

    async def _on_success(self, opportunity: Opportunity, outcome: SettlementOutcome) -> None:
        self._liquidation_count += 1
        self._total_profit += opportunity.net_profit_native

        record = LiquidationRecord(
            tx_hash=outcome.tx_hash or "",
            borrower=opportunity.borrower,
            debt_market=opportunity.debt_market.symbol,
            collateral_market=opportunity.collateral_market.symbol,
            repay_amount=str(opportunity.repay_amount),
            profit_native=str(opportunity.net_profit_native),
            gas_used=outcome.gas_used,
        )
        try:
            self.store.add_liquidation(record)
        except StorageError as e:
            logger.warning(f"Liquidation not persisted: {e}")

        logger.info(
            "Liquidation confirmed",
            extra={"context": {
                "tx_hash": outcome.tx_hash,
                "borrower": opportunity.borrower,
                "profit_native": str(opportunity.net_profit_native),
                "gas_used": outcome.gas_used,
                "total": self._liquidation_count,
            }},
        )
        await self.notifier.send(
            f"✅ <b>Liquidation confirmed</b>\n"
            f"Borrower: {short_address(opportunity.borrower)}\n"
            f"Repay: {opportunity.repay_amount} {opportunity.debt_market.symbol}\n"
            f"Collateral: {opportunity.collateral_market.symbol}\n"
            f"Est. profit: {opportunity.net_profit_native:.4f}\n"
            f"Tx: {outcome.tx_hash}"
        )
        await self._sleep(self.cooldown_seconds)

    async def _on_failure(self, opportunity: Opportunity, outcome: SettlementOutcome) -> None:
        self._failure_count += 1
        logger.error(
            "Liquidation failed",
            extra={"context": {
                "status": outcome.status.value,
                "borrower": opportunity.borrower,
                "tx_hash": outcome.tx_hash,
                "error": outcome.error,
            }},
        )
        await self.notifier.send(
            f"❌ <b>Liquidation {outcome.status.value.lower()}</b>\n"
            f"Borrower: {short_address(opportunity.borrower)}\n"
            f"Error: {outcome.error}"
        )
