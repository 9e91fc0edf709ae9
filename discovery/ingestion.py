"""
discovery/ingestion.py - Borrow / RepayBorrow / LiquidateBorrow ingestion.

Two feeds update the registry:
- push: websocket log subscription -> asyncio.Queue -> single consumer task
- pull: eth_getLogs backfill over bounded block chunks (startup lookback and
  periodic long-range re-catch)

Repay events never evict on their own word: the handler re-reads
borrowBalanceStored and evicts only on an exact zero. A per-borrower lease
keeps two repay notifications for the same borrower from verifying at once.
"""

import asyncio
from typing import Callable, Optional

from chains.abi import EVENT_TOPICS, LendingLog, decode_lending_log
from chains.providers import RPCProvider
from chains.subscriptions import LogSubscription
from core.constants import (
    DEFAULT_LOG_CHUNK_BLOCKS,
    DEFAULT_REPAY_LEASE_SECONDS,
    LendingEvent,
    ListenerState,
)
from core.exceptions import DecodeError, LiqbotError
from core.logging import get_logger, short_address
from core.time import monotonic
from discovery.registry import PositionRegistry
from lending.venus import VenusAdapter

logger = get_logger("liqbot.ingestion")


class RepayLeases:
    """
    Per-borrower timed leases.

    A lease is held with no expiry while verification runs, then kept for
    `hold_seconds` after release so rapid repeat events coalesce.
    """

    def __init__(
        self,
        hold_seconds: float = DEFAULT_REPAY_LEASE_SECONDS,
        clock: Callable[[], float] = monotonic,
    ):
        self.hold_seconds = hold_seconds
        self._clock = clock
        self._leases: dict[str, Optional[float]] = {}

    def held(self, address: str) -> bool:
        if address not in self._leases:
            return False
        expires_at = self._leases[address]
        if expires_at is None:
            return True
        if expires_at > self._clock():
            return True
        del self._leases[address]
        return False

    def try_acquire(self, address: str) -> bool:
        if self.held(address):
            return False
        self._leases[address] = None
        return True

    def release(self, address: str) -> None:
        """Start the post-verification hold window."""
        self._leases[address] = self._clock() + self.hold_seconds

    def __len__(self) -> int:
        return sum(1 for address in list(self._leases) if self.held(address))


class EventIngestion:
    """Keeps the registry current from protocol events."""

    def __init__(
        self,
        provider: RPCProvider,
        adapter: VenusAdapter,
        registry: PositionRegistry,
        ws_url: Optional[str] = None,
        lease_seconds: float = DEFAULT_REPAY_LEASE_SECONDS,
        log_chunk_blocks: int = DEFAULT_LOG_CHUNK_BLOCKS,
        clock: Callable[[], float] = monotonic,
        subscription_factory: Optional[Callable[..., LogSubscription]] = None,
    ):
        self.provider = provider
        self.adapter = adapter
        self.registry = registry
        self.ws_url = ws_url
        self.log_chunk_blocks = max(1, log_chunk_blocks)
        self.leases = RepayLeases(lease_seconds, clock)
        self._subscription_factory = subscription_factory or LogSubscription

        self.state = ListenerState.NOT_LISTENING
        self.queue: asyncio.Queue = asyncio.Queue()
        self._subscription: Optional[LogSubscription] = None
        self._consumer: Optional[asyncio.Task] = None

        self.last_backfilled_block: Optional[int] = None
        self.events_processed = 0
        self.liquidations_observed = 0

    @property
    def market_addresses(self) -> list[str]:
        return [m.address for m in self.adapter.markets]

    @property
    def topics(self) -> list:
        # One topic0 position matching any of the three events
        return [[EVENT_TOPICS[e] for e in LendingEvent]]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_listening(self) -> None:
        """Start consumer and push subscription. No-op if already listening."""
        if self.state == ListenerState.LISTENING:
            return

        self._consumer = asyncio.create_task(self._consume(), name="ingestion-consumer")
        if self.ws_url:
            self._subscription = self._subscription_factory(
                self.ws_url, self.market_addresses, self.topics, self.queue,
            )
            self._subscription.start()
        else:
            logger.warning("No websocket endpoint configured, relying on backfill only")

        self.state = ListenerState.LISTENING
        logger.info(
            "Event listeners started",
            extra={"context": {"markets": len(self.market_addresses), "push": bool(self.ws_url)}},
        )

    async def stop_listening(self) -> None:
        """Tear down subscription and consumer. Safe to call repeatedly."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.stop()

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Ingestion consumer had already failed")

        if self.state == ListenerState.LISTENING:
            logger.info("Event listeners stopped")
        self.state = ListenerState.NOT_LISTENING

    async def _consume(self) -> None:
        while True:
            raw = await self.queue.get()
            try:
                await self.handle_log(raw)
            except LiqbotError as e:
                logger.warning(f"Event handling failed: {e}")
            except Exception:
                logger.exception(
                    "Unexpected error handling event",
                    extra={"context": {"block": raw.get("blockNumber") if isinstance(raw, dict) else None}},
                )
            finally:
                self.queue.task_done()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_log(self, raw: dict) -> None:
        try:
            event = decode_lending_log(raw)
        except DecodeError as e:
            logger.debug(f"Skipping undecodable log: {e}")
            return

        self.events_processed += 1
        if event.event == LendingEvent.BORROW:
            await self.on_borrow(event)
        elif event.event == LendingEvent.REPAY_BORROW:
            await self.on_repay(event)
        else:
            self.on_liquidation(event)

    async def on_borrow(self, event: LendingLog) -> None:
        await self.registry.add(event.borrower, event.block_number)

    async def on_repay(self, event: LendingLog) -> bool:
        """
        Verify-before-evict.

        The event's accountBorrows field is ignored; only a fresh
        borrowBalanceStored read of exactly zero evicts.

        Returns:
            True if the borrower was evicted
        """
        borrower = event.borrower
        if not self.leases.try_acquire(borrower):
            logger.debug(
                "Repay verification already in progress",
                extra={"context": {"borrower": borrower}},
            )
            return False

        try:
            market = self.adapter.market_by_address(event.market)
            if market is None:
                return False
            try:
                balance = await self.adapter.borrow_balance(borrower, market)
            except LiqbotError as e:
                logger.warning(
                    f"Repay verification read failed, keeping borrower: {e}",
                    extra={"context": {"borrower": borrower, "market": market.symbol}},
                )
                return False

            if balance != 0:
                return False

            evicted = await self.registry.remove(borrower, event.block_number)
            if evicted:
                logger.info(
                    f"Borrower {short_address(borrower)} fully repaid on {market.symbol}",
                    extra={"context": {"borrower": borrower, "block": event.block_number}},
                )
            return evicted
        finally:
            self.leases.release(borrower)

    def on_liquidation(self, event: LendingLog) -> None:
        self.liquidations_observed += 1
        logger.info(
            "Liquidation observed",
            extra={"context": {
                "borrower": event.borrower,
                "market": event.market,
                "tx_hash": event.tx_hash,
                "block": event.block_number,
            }},
        )

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill(self, from_block: int, to_block: int) -> int:
        """
        Replay logs for [from_block, to_block] in chunks.

        A failed chunk is logged and skipped; later chunks still run.

        Returns:
            Number of logs handled
        """
        handled = 0
        start = from_block
        while start <= to_block:
            end = min(start + self.log_chunk_blocks - 1, to_block)
            try:
                logs = await self.provider.get_logs(
                    self.market_addresses, self.topics, start, end,
                )
            except LiqbotError as e:
                logger.warning(
                    f"Backfill chunk failed: {e}",
                    extra={"context": {"from_block": start, "to_block": end}},
                )
                start = end + 1
                continue

            logs.sort(key=_log_position)
            for raw in logs:
                await self.handle_log(raw)
                handled += 1
            start = end + 1

        logger.info(
            "Backfill complete",
            extra={"context": {
                "from_block": from_block,
                "to_block": to_block,
                "logs": handled,
                "tracked": self.registry.count(),
            }},
        )
        return handled

    async def backfill_recent(self, lookback_blocks: int) -> int:
        """Backfill the last `lookback_blocks` blocks up to the current head."""
        head = await self.provider.get_block_number()
        from_block = max(0, head - lookback_blocks + 1)
        handled = await self.backfill(from_block, head)
        self.last_backfilled_block = head
        return handled


def _log_position(raw: dict) -> tuple[int, int]:
    def as_int(value) -> int:
        try:
            if isinstance(value, str):
                return int(value, 16)
            return int(value or 0)
        except (TypeError, ValueError):
            # undecodable entries are skipped by handle_log anyway
            return 0
    return as_int(raw.get("blockNumber")), as_int(raw.get("logIndex"))
