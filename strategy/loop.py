"""
strategy/loop.py - Single control loop.

Each cycle: price check -> scan -> settle (sequential) -> maintenance
(prune, historical re-catch, retention cleanup, status summary) -> sleep.
A stop request is honored between steps; a settlement in flight is allowed
to finish.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from chains.multicall import BatchReader
from chains.providers import RPCProvider
from core.exceptions import LiqbotError
from core.logging import get_logger
from core.time import IntervalTimer, monotonic, now_iso
from discovery.ingestion import EventIngestion
from discovery.pruner import Pruner
from discovery.registry import PositionRegistry
from execution.controller import ExecutionController
from execution.settlement import ContractSettlement, DryRunSettlement, SettlementAction
from lending.venus import VenusAdapter
from monitoring.notifier import Notifier, NullNotifier, build_notifier
from storage.store import BorrowerStore, NullStore, open_store
from strategy.circuit_breaker import CircuitBreaker
from strategy.config import BotConfig
from strategy.scanner import OpportunityScanner, ScanResult

logger = get_logger("liqbot.loop")

SECONDS_PER_DAY = 24 * 60 * 60


class LiquidationLoop:
    """Owns the components and drives them on fixed intervals."""

    def __init__(
        self,
        config: BotConfig,
        provider: RPCProvider,
        adapter: VenusAdapter,
        registry: PositionRegistry,
        ingestion: EventIngestion,
        pruner: Pruner,
        breaker: CircuitBreaker,
        scanner: OpportunityScanner,
        controller: ExecutionController,
        store: Optional[BorrowerStore] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.config = config
        self.provider = provider
        self.adapter = adapter
        self.registry = registry
        self.ingestion = ingestion
        self.pruner = pruner
        self.breaker = breaker
        self.scanner = scanner
        self.controller = controller
        self.store = store or NullStore()
        self.notifier = notifier or NullNotifier()

        timing = config.timing
        self.prune_timer = IntervalTimer(timing.pruning_interval_seconds, clock, start_marked=True)
        self.catch_timer = IntervalTimer(timing.historical_catch_interval_seconds, clock, start_marked=True)
        self.status_timer = IntervalTimer(timing.status_interval_seconds, clock, start_marked=True)
        self.retention_timer = IntervalTimer(SECONDS_PER_DAY, clock)

        self._stop_event = asyncio.Event()
        self._prune_task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.started_at: Optional[str] = None
        self.last_scan: Optional[ScanResult] = None

    # ------------------------------------------------------------------
    # Stop / reset (signal handlers)
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Stop requested")
        self._stop_event.set()

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    async def reset_circuit_breaker(self) -> None:
        await self.breaker.reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.started_at = now_iso()
        loaded = self.registry.load_from_store()
        await self.breaker.initialize()
        await self.ingestion.start_listening()

        try:
            await self.ingestion.backfill_recent(self.config.timing.startup_lookback_blocks)
        except LiqbotError as e:
            logger.warning(f"Startup backfill failed, continuing with live events: {e}")

        logger.info(
            "Liquidation loop started",
            extra={"context": {
                "loaded_from_store": loaded,
                "tracked": self.registry.count(),
                "markets": len(self.adapter.markets),
                "dry_run": self.config.execution.dry_run,
            }},
        )
        await self.notifier.send(
            f"🤖 <b>Liquidation bot started</b>\n"
            f"Tracking {self.registry.count()} borrowers across {len(self.adapter.markets)} markets\n"
            f"Mode: {'DRY RUN' if self.config.execution.dry_run else 'LIVE'}"
        )

    async def run_forever(self) -> None:
        await self.start()
        try:
            while not self.should_stop():
                await self.run_cycle()
                if self.should_stop():
                    break
                await self.maintenance()
                await self._sleep(self.config.timing.polling_interval_seconds)
        finally:
            await self.shutdown()

    async def _sleep(self, seconds: float) -> None:
        """Sleep until the next cycle or until stop is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def shutdown(self) -> None:
        await self.ingestion.stop_listening()
        if self._prune_task is not None:
            try:
                await self._prune_task
            except LiqbotError as e:
                logger.warning(f"Prune task failed during shutdown: {e}")
            self._prune_task = None

        status = self.get_status()
        logger.info("Liquidation loop stopped", extra={"context": status})
        controller = status["execution"]
        await self.notifier.send(
            f"🛑 <b>Liquidation bot stopped</b>\n"
            f"Cycles: {self.cycles}\n"
            f"Liquidations: {controller['liquidations']} "
            f"(failed {controller['failures']})\n"
            f"Profit: {controller['total_profit_native']}"
        )
        await self.notifier.close()
        await self.provider.close()
        self.store.close()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[ScanResult]:
        """
        One price-check / scan / settle pass.

        Component errors are logged here and never escape the loop.
        """
        self.cycles += 1
        try:
            if not await self.breaker.check_prices():
                logger.warning(
                    "Circuit breaker not operational, skipping cycle",
                    extra={"context": {"reason": self.breaker.trip_info.reason if self.breaker.trip_info else None}},
                )
                return None
            if self.should_stop():
                return None

            result = await self.scanner.scan()
            self.last_scan = result
            if self.should_stop() or not result.opportunities:
                return result

            await self.controller.execute_all(result.opportunities)
            return result
        except LiqbotError as e:
            logger.error(f"Cycle failed: {e}", extra={"context": {"cycle": self.cycles}})
        except Exception:
            logger.exception("Unexpected error in cycle", extra={"context": {"cycle": self.cycles}})
        return None

    async def maintenance(self) -> None:
        if self.prune_timer.due():
            self.prune_timer.mark()
            self._start_prune()

        if self.catch_timer.due():
            self.catch_timer.mark()
            try:
                await self.ingestion.backfill_recent(self.config.timing.historical_catch_blocks)
            except LiqbotError as e:
                logger.warning(f"Historical re-catch failed: {e}")

        if self.retention_timer.due():
            self.retention_timer.mark()
            try:
                self.store.cleanup_old_borrowers(self.config.timing.retention_days)
            except LiqbotError as e:
                logger.warning(f"Retention cleanup failed: {e}")
            await self.registry.expire_evictions(self.config.timing.retention_days)

        if self.status_timer.due():
            self.status_timer.mark()
            logger.info("Status", extra={"context": self.get_status()})

    def _start_prune(self) -> None:
        if self._prune_task is not None and not self._prune_task.done():
            logger.debug("Previous prune still running")
            return
        self._prune_task = asyncio.create_task(self._prune(), name="prune")

    async def _prune(self) -> None:
        try:
            await self.pruner.prune()
        except LiqbotError as e:
            logger.warning(f"Prune failed: {e}")

    def get_status(self) -> Dict[str, Any]:
        try:
            store_stats = self.store.get_stats()
        except LiqbotError as e:
            store_stats = {"error": str(e)}

        return {
            "started_at": self.started_at,
            "cycles": self.cycles,
            "tracked_borrowers": self.registry.count(),
            "listener": self.ingestion.state.value,
            "events_processed": self.ingestion.events_processed,
            "circuit_breaker": self.breaker.get_status(),
            "execution": self.controller.get_stats(),
            "last_scan": {
                "candidates": self.last_scan.candidates,
                "opportunities": len(self.last_scan.opportunities),
            } if self.last_scan else None,
            "store": store_stats,
            "rpc": self.provider.get_stats_summary(),
        }


def build_loop(config: BotConfig) -> LiquidationLoop:
    """Wire every component from configuration."""
    provider = RPCProvider(
        chain_id=config.chain.chain_id,
        rpc_urls=config.chain.rpc_urls,
        timeout_seconds=config.chain.rpc_timeout_seconds,
        max_in_flight=config.chain.max_in_flight,
    )
    reader = BatchReader(provider, multicall_address=config.chain.multicall_address)
    adapter = VenusAdapter(
        provider,
        reader,
        comptroller=config.protocol.comptroller,
        oracle=config.protocol.oracle,
        markets=config.protocol.markets,
        fallback_gas_price_gwei=config.execution.fallback_gas_price_gwei,
    )
    store = open_store(config.storage.database_path)
    notifier = build_notifier(
        config.notifications.telegram_bot_token,
        config.notifications.telegram_chat_id,
    )
    registry = PositionRegistry(store)
    ingestion = EventIngestion(
        provider,
        adapter,
        registry,
        ws_url=config.chain.ws_url,
        lease_seconds=config.timing.repay_lease_seconds,
        log_chunk_blocks=config.timing.log_chunk_blocks,
    )
    pruner = Pruner(registry, reader, adapter.markets, provider)
    breaker = CircuitBreaker(
        adapter,
        notifier,
        max_change_percent=config.safety.max_price_change_percent,
        history_size=config.safety.price_history_size,
    )

    settlement: SettlementAction
    if config.execution.dry_run:
        settlement = DryRunSettlement(config.protocol.native_token, config.execution.default_gas_limit)
    else:
        settlement = ContractSettlement(
            provider,
            contract_address=config.execution.contract_address,
            private_key=config.execution.private_key,
            chain_id=config.chain.chain_id,
            native_token=config.protocol.native_token,
            receipt_timeout_seconds=config.execution.settlement_timeout_seconds,
        )

    loop: Optional[LiquidationLoop] = None

    def should_stop() -> bool:
        return loop is not None and loop.should_stop()

    s = config.strategy
    scanner = OpportunityScanner(
        registry,
        adapter,
        breaker,
        min_profit_native=s.min_profit_native,
        max_liquidation_size_native=s.max_liquidation_size_native,
        swap_slippage=s.swap_slippage,
        gas_units=s.gas_units,
        swap_fee=s.swap_fee_tier,
        min_out_bps=s.min_out_bps,
        max_concurrent_checks=s.max_concurrent_checks,
        max_borrowers_per_scan=s.max_borrowers_per_scan,
        should_stop=should_stop,
    )
    controller = ExecutionController(
        adapter,
        settlement,
        store=store,
        notifier=notifier,
        gas_buffer_percent=config.execution.gas_buffer_percent,
        default_gas_limit=config.execution.default_gas_limit,
        settlement_timeout_seconds=config.execution.settlement_timeout_seconds,
        cooldown_seconds=config.execution.cooldown_seconds,
        should_stop=should_stop,
    )

    loop = LiquidationLoop(
        config,
        provider,
        adapter,
        registry,
        ingestion,
        pruner,
        breaker,
        scanner,
        controller,
        store=store,
        notifier=notifier,
    )
    return loop
