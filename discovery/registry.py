"""
discovery/registry.py - Active borrower registry.

The in-memory set is authoritative for the process lifetime; every mutation
is mirrored to the store (write-behind). Store failures are logged and never
raised.

Evictions remember the block they were verified at, so replayed Borrow
events at or below that block (backfill overlap, websocket redelivery) do
not resurrect a borrower that was already verified zero.
"""

import asyncio
from typing import Callable, Optional

from eth_utils import to_checksum_address

from core.exceptions import StorageError
from core.logging import get_logger
from core.models import Position
from core.time import now_ms
from storage.store import BorrowerStore, NullStore

logger = get_logger("liqbot.registry")

MS_PER_DAY = 24 * 60 * 60 * 1000


def normalize_address(address: str) -> str:
    return to_checksum_address(address)


class PositionRegistry:
    """Set of borrowers believed to hold outstanding debt."""

    def __init__(self, store: Optional[BorrowerStore] = None):
        self.store: BorrowerStore = store or NullStore()
        self._positions: dict[str, Position] = {}
        self._evicted_at: dict[str, int] = {}
        self._evicted_ms: dict[str, int] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Mutations (serialized)
    # ------------------------------------------------------------------

    async def add(self, address: str, block: Optional[int] = None) -> bool:
        """
        Track a borrower. Idempotent.

        Returns:
            True if the borrower was not tracked before
        """
        address = normalize_address(address)
        async with self._lock:
            evicted_at = self._evicted_at.get(address)
            if block is not None and evicted_at is not None and block <= evicted_at:
                logger.debug(
                    "Ignoring replayed add for evicted borrower",
                    extra={"context": {"borrower": address, "block": block, "evicted_at": evicted_at}},
                )
                return False

            self._evicted_at.pop(address, None)
            self._evicted_ms.pop(address, None)
            position = self._positions.get(address)
            added = position is None
            if added:
                self._positions[address] = Position(address=address)
            else:
                position.touch()

            self._mirror(self.store.upsert_borrower, address, block)

        if added:
            logger.info(
                "Borrower added",
                extra={"context": {"borrower": address, "block": block, "tracked": len(self._positions)}},
            )
        return added

    async def remove(self, address: str, block: Optional[int] = None) -> bool:
        """
        Stop tracking a borrower after a verified zero balance. Idempotent.

        Returns:
            True if the borrower was tracked
        """
        address = normalize_address(address)
        async with self._lock:
            if self._positions.pop(address, None) is None:
                return False
            if block is not None:
                self._evicted_at[address] = max(block, self._evicted_at.get(address, block))
                self._evicted_ms[address] = now_ms()
            self._mirror(self.store.mark_zero_balance, address, block)

        logger.info(
            "Borrower removed",
            extra={"context": {"borrower": address, "block": block, "tracked": len(self._positions)}},
        )
        return True

    async def mark_verified(self, address: str) -> None:
        """Record a successful re-verification of a tracked borrower."""
        address = normalize_address(address)
        async with self._lock:
            position = self._positions.get(address)
            if position is None:
                return
            position.last_verified_ms = now_ms()
            self._mirror(self.store.mark_checked, address)

    # ------------------------------------------------------------------
    # Reads (lock-free copies)
    # ------------------------------------------------------------------

    def is_active(self, address: str) -> bool:
        return normalize_address(address) in self._positions

    def count(self) -> int:
        return len(self._positions)

    def snapshot(self) -> list[str]:
        """Tracked addresses ordered by first_seen, then address."""
        positions = list(self._positions.values())
        positions.sort(key=lambda p: (p.first_seen_ms, p.address))
        return [p.address for p in positions]

    def get(self, address: str) -> Optional[Position]:
        return self._positions.get(normalize_address(address))

    def eviction_block(self, address: str) -> Optional[int]:
        return self._evicted_at.get(normalize_address(address))

    async def expire_evictions(self, days: int) -> int:
        """
        Forget eviction blocks recorded more than `days` days ago.

        Returns:
            Number of entries dropped
        """
        cutoff = now_ms() - days * MS_PER_DAY
        async with self._lock:
            expired = [a for a, ms in self._evicted_ms.items() if ms < cutoff]
            for address in expired:
                self._evicted_at.pop(address, None)
                del self._evicted_ms[address]

        if expired:
            logger.info(
                "Eviction blocks expired",
                extra={"context": {"expired": len(expired), "remaining": len(self._evicted_at)}},
            )
        return len(expired)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def load_from_store(self) -> int:
        """
        Warm-start from the store.

        Returns:
            Number of borrowers loaded (0 if the store is unavailable)
        """
        try:
            positions = self.store.load_active_borrowers()
            evictions = self.store.load_eviction_blocks()
        except StorageError as e:
            logger.error(f"Store unavailable at startup, starting empty: {e}")
            return 0

        for position in positions:
            self._positions[normalize_address(position.address)] = position
        loaded_ms = now_ms()
        for address, block in evictions.items():
            address = normalize_address(address)
            self._evicted_at[address] = block
            self._evicted_ms[address] = loaded_ms

        logger.info(
            "Registry loaded from store",
            extra={"context": {"borrowers": len(positions), "evictions": len(evictions)}},
        )
        return len(positions)

    def _mirror(self, write: Callable, *args) -> None:
        try:
            write(*args)
        except StorageError as e:
            logger.warning(
                f"Store write failed: {e}",
                extra={"context": {"op": getattr(write, "__name__", "write")}},
            )
