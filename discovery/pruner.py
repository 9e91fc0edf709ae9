"""
discovery/pruner.py - Periodic eviction of fully repaid borrowers.

Only a definitive zero across every tracked market evicts. A failed or
undecodable read keeps the borrower; a failed sweep evicts nobody.
"""

from dataclasses import dataclass, field
from typing import Optional

from chains.multicall import BatchReader
from chains.providers import RPCProvider
from core.constants import BalanceVerdict
from core.exceptions import LiqbotError
from core.logging import get_logger
from core.models import Market
from discovery.registry import PositionRegistry

logger = get_logger("liqbot.pruner")


@dataclass
class PruneResult:
    checked: int = 0
    evicted: list[str] = field(default_factory=list)
    unknown: int = 0
    skipped: bool = False
    error: Optional[str] = None


class Pruner:
    """Re-verifies registry members and evicts zero-debt borrowers."""

    def __init__(
        self,
        registry: PositionRegistry,
        reader: BatchReader,
        markets: list[Market],
        provider: Optional[RPCProvider] = None,
    ):
        self.registry = registry
        self.reader = reader
        self.markets = markets
        self.provider = provider
        self._running = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._running

    async def prune(self) -> PruneResult:
        """Sweep every tracked borrower. Re-entrant calls are skipped."""
        if self._running:
            logger.debug("Prune already in progress, skipping")
            return PruneResult(skipped=True)

        self._running = True
        try:
            return await self._prune()
        finally:
            self._running = False

    async def _prune(self) -> PruneResult:
        borrowers = self.registry.snapshot()
        result = PruneResult(checked=len(borrowers))
        if not borrowers:
            return result

        # evictions are stamped with the block the sweep itself read
        block = await self._current_block()
        try:
            verdicts = await self.reader.sweep_balances(borrowers, self.markets, block=block)
        except LiqbotError as e:
            logger.warning(f"Prune sweep failed, nothing evicted: {e}")
            result.error = str(e)
            return result

        for borrower in borrowers:
            verdict = verdicts.get(borrower, BalanceVerdict.UNKNOWN)
            if verdict == BalanceVerdict.ZERO:
                if await self.registry.remove(borrower, block):
                    result.evicted.append(borrower)
            elif verdict == BalanceVerdict.ACTIVE:
                await self.registry.mark_verified(borrower)
            else:
                result.unknown += 1

        self.runs += 1
        logger.info(
            "Prune complete",
            extra={"context": {
                "checked": result.checked,
                "evicted": len(result.evicted),
                "unknown": result.unknown,
                "remaining": self.registry.count(),
            }},
        )
        return result

    async def _current_block(self) -> Optional[int]:
        """Head block the sweep is pinned to; None reads latest and leaves evictions unstamped."""
        if self.provider is None:
            return None
        try:
            return await self.provider.get_block_number()
        except LiqbotError as e:
            logger.debug(f"Block number unavailable for eviction stamp: {e}")
            return None
