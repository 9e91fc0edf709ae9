"""
tests/unit/test_ingestion.py - Event ingestion: borrow adds, verified repay
evictions, backfill and listener lifecycle.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from eth_utils import encode_hex, to_checksum_address

from chains.abi import EVENT_TOPICS
from core.constants import LendingEvent, ListenerState
from core.exceptions import InfraError, RPCTimeoutError
from core.models import Market
from discovery.ingestion import EventIngestion, RepayLeases
from discovery.registry import PositionRegistry

VUSDT = Market(
    "vUSDT",
    to_checksum_address("0xfd5840cd36d94d7229439859c0112a4185bc0255"),
    to_checksum_address("0x55d398326f99059ff775485246999027b3197955"),
)
VBNB = Market("vBNB", to_checksum_address("0xa07c5b74c9b40447a954e1466938b865b6bbea36"))
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
PAYER = "0x9999999999999999999999999999999999999999"


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def borrow_log(borrower: str, block: int, market: Market = VUSDT, log_index: int = 0) -> dict:
    return {
        "address": market.address.lower(),
        "topics": [EVENT_TOPICS[LendingEvent.BORROW]],
        "data": encode_hex(encode(["address", "uint256", "uint256", "uint256"], [borrower, 10, 10, 10])),
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": "0xb0",
    }


def repay_log(borrower: str, block: int, market: Market = VUSDT, account_borrows: int = 0, log_index: int = 0) -> dict:
    return {
        "address": market.address.lower(),
        "topics": [EVENT_TOPICS[LendingEvent.REPAY_BORROW]],
        "data": encode_hex(encode(
            ["address", "address", "uint256", "uint256", "uint256"],
            [PAYER, borrower, 10, account_borrows, 0],
        )),
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": "0xr0",
    }


def liquidate_log(borrower: str, block: int) -> dict:
    return {
        "address": VUSDT.address.lower(),
        "topics": [EVENT_TOPICS[LendingEvent.LIQUIDATE_BORROW]],
        "data": encode_hex(encode(
            ["address", "address", "uint256", "address", "uint256"],
            [PAYER, borrower, 10, VBNB.address, 5],
        )),
        "blockNumber": hex(block),
        "transactionHash": "0xl0",
    }


def make_adapter(balance: int = 0):
    adapter = MagicMock()
    adapter.markets = [VUSDT, VBNB]
    by_address = {m.address.lower(): m for m in adapter.markets}
    adapter.market_by_address = lambda address: by_address.get(address.lower())
    adapter.borrow_balance = AsyncMock(return_value=balance)
    return adapter


def make_ingestion(adapter=None, provider=None, clock=None, **kwargs):
    registry = PositionRegistry()
    ingestion = EventIngestion(
        provider or MagicMock(),
        adapter or make_adapter(),
        registry,
        clock=clock or FakeClock(),
        **kwargs,
    )
    return ingestion, registry


class TestRepayLeases:

    def test_held_while_verifying_then_for_hold_window(self):
        clock = FakeClock()
        leases = RepayLeases(hold_seconds=1.0, clock=clock)

        assert leases.try_acquire(ALICE)
        assert not leases.try_acquire(ALICE)

        clock.now += 60
        assert leases.held(ALICE)

        leases.release(ALICE)
        assert not leases.try_acquire(ALICE)

        clock.now += 1.0
        assert not leases.held(ALICE)
        assert leases.try_acquire(ALICE)

    def test_len_counts_live_leases(self):
        clock = FakeClock()
        leases = RepayLeases(hold_seconds=1.0, clock=clock)
        leases.try_acquire(ALICE)
        leases.try_acquire(BOB)
        leases.release(BOB)
        clock.now += 2
        assert len(leases) == 1


class TestHandlers:

    @pytest.mark.asyncio
    async def test_borrow_adds(self):
        ingestion, registry = make_ingestion()
        await ingestion.handle_log(borrow_log(ALICE, 10))

        assert registry.is_active(ALICE)
        assert ingestion.events_processed == 1

    @pytest.mark.asyncio
    async def test_repay_with_zero_read_evicts(self):
        adapter = make_adapter(balance=0)
        ingestion, registry = make_ingestion(adapter)
        await registry.add(ALICE, 10)

        await ingestion.handle_log(repay_log(ALICE, 20))

        assert not registry.is_active(ALICE)
        assert registry.eviction_block(ALICE) == 20
        adapter.borrow_balance.assert_awaited_once_with(ALICE, VUSDT)

    @pytest.mark.asyncio
    async def test_repay_with_nonzero_read_keeps(self):
        ingestion, registry = make_ingestion(make_adapter(balance=1))
        await registry.add(ALICE, 10)

        # The event claims zero, but the fresh read disagrees
        await ingestion.handle_log(repay_log(ALICE, 21, account_borrows=0))

        assert registry.is_active(ALICE)
        assert registry.eviction_block(ALICE) is None

    @pytest.mark.asyncio
    async def test_repay_read_failure_keeps(self):
        adapter = make_adapter()
        adapter.borrow_balance = AsyncMock(side_effect=RPCTimeoutError("slow"))
        ingestion, registry = make_ingestion(adapter)
        await registry.add(ALICE, 10)

        await ingestion.handle_log(repay_log(ALICE, 20))

        assert registry.is_active(ALICE)

    @pytest.mark.asyncio
    async def test_repay_for_unknown_market_ignored(self):
        adapter = make_adapter()
        ingestion, registry = make_ingestion(adapter)
        await registry.add(ALICE, 10)
        log = repay_log(ALICE, 20)
        log["address"] = "0x" + "ab" * 20

        await ingestion.handle_log(log)

        assert registry.is_active(ALICE)
        adapter.borrow_balance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_repays_verify_once(self):
        gate = asyncio.Event()

        async def slow_balance(borrower, market):
            await gate.wait()
            return 0

        adapter = make_adapter()
        adapter.borrow_balance = AsyncMock(side_effect=slow_balance)
        ingestion, registry = make_ingestion(adapter)
        await registry.add(ALICE, 10)

        first = asyncio.create_task(ingestion.handle_log(repay_log(ALICE, 20)))
        await asyncio.sleep(0)
        await ingestion.handle_log(repay_log(ALICE, 20, log_index=1))
        gate.set()
        await first

        assert adapter.borrow_balance.await_count == 1
        assert not registry.is_active(ALICE)

    @pytest.mark.asyncio
    async def test_repay_after_hold_window_verifies_again(self):
        clock = FakeClock()
        adapter = make_adapter(balance=5)
        ingestion, registry = make_ingestion(adapter, clock=clock, lease_seconds=1.0)
        await registry.add(ALICE, 10)

        await ingestion.handle_log(repay_log(ALICE, 20))
        await ingestion.handle_log(repay_log(ALICE, 21))
        assert adapter.borrow_balance.await_count == 1

        clock.now += 1.5
        await ingestion.handle_log(repay_log(ALICE, 22))
        assert adapter.borrow_balance.await_count == 2

    @pytest.mark.asyncio
    async def test_replayed_borrow_after_eviction_ignored(self):
        ingestion, registry = make_ingestion(make_adapter(balance=0))
        await ingestion.handle_log(borrow_log(ALICE, 10))
        await ingestion.handle_log(repay_log(ALICE, 20))

        await ingestion.handle_log(borrow_log(ALICE, 10))
        assert not registry.is_active(ALICE)

        await ingestion.handle_log(borrow_log(ALICE, 30))
        assert registry.is_active(ALICE)

    @pytest.mark.asyncio
    async def test_liquidation_is_observed_only(self):
        ingestion, registry = make_ingestion()
        await registry.add(ALICE, 10)

        await ingestion.handle_log(liquidate_log(ALICE, 20))

        assert registry.is_active(ALICE)
        assert ingestion.liquidations_observed == 1

    @pytest.mark.asyncio
    async def test_undecodable_log_skipped(self):
        ingestion, registry = make_ingestion()
        await ingestion.handle_log({"address": VUSDT.address, "topics": ["0x" + "00" * 32], "data": "0x"})
        assert ingestion.events_processed == 0


class TestBackfill:

    @pytest.mark.asyncio
    async def test_chunks_and_failed_chunk_skipped(self):
        provider = MagicMock()
        calls = []

        async def get_logs(addresses, topics, start, end):
            calls.append((start, end))
            if start == 110:
                raise InfraError("range too large")
            if start == 100:
                return [borrow_log(ALICE, 105)]
            return [borrow_log(BOB, 125)]

        provider.get_logs = AsyncMock(side_effect=get_logs)
        ingestion, registry = make_ingestion(provider=provider, log_chunk_blocks=10)

        handled = await ingestion.backfill(100, 125)

        assert calls == [(100, 109), (110, 119), (120, 125)]
        assert handled == 2
        assert registry.is_active(ALICE)
        assert registry.is_active(BOB)

    @pytest.mark.asyncio
    async def test_logs_applied_in_chain_order(self):
        provider = MagicMock()
        # Node returns the repay before the borrow it follows
        provider.get_logs = AsyncMock(return_value=[
            repay_log(ALICE, 50, log_index=0),
            borrow_log(ALICE, 40, log_index=3),
        ])
        ingestion, registry = make_ingestion(make_adapter(balance=0), provider=provider)

        await ingestion.backfill(1, 60)

        assert not registry.is_active(ALICE)
        assert registry.eviction_block(ALICE) == 50

    @pytest.mark.asyncio
    async def test_backfill_recent(self):
        provider = MagicMock()
        provider.get_block_number = AsyncMock(return_value=1_000)
        provider.get_logs = AsyncMock(return_value=[])
        ingestion, _ = make_ingestion(provider=provider, log_chunk_blocks=5_000)

        await ingestion.backfill_recent(100)

        provider.get_logs.assert_awaited_once()
        args = provider.get_logs.await_args.args
        assert args[2:] == (901, 1_000)
        assert args[0] == [VUSDT.address, VBNB.address]
        assert ingestion.last_backfilled_block == 1_000


class FakeSubscription:
    instances: list = []

    def __init__(self, ws_url, addresses, topics, queue):
        self.ws_url = ws_url
        self.addresses = addresses
        self.topics = topics
        self.queue = queue
        self.started = False
        self.stopped = False
        FakeSubscription.instances.append(self)

    def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self):
        FakeSubscription.instances = []
        ingestion, _ = make_ingestion(ws_url="wss://node.test", subscription_factory=FakeSubscription)

        await ingestion.start_listening()
        await ingestion.start_listening()
        assert ingestion.state == ListenerState.LISTENING
        assert len(FakeSubscription.instances) == 1
        sub = FakeSubscription.instances[0]
        assert sub.started
        assert sub.topics == [[EVENT_TOPICS[e] for e in LendingEvent]]

        await ingestion.stop_listening()
        await ingestion.stop_listening()
        assert ingestion.state == ListenerState.NOT_LISTENING
        assert sub.stopped

    @pytest.mark.asyncio
    async def test_pushed_logs_are_consumed(self):
        FakeSubscription.instances = []
        ingestion, registry = make_ingestion(ws_url="wss://node.test", subscription_factory=FakeSubscription)
        await ingestion.start_listening()

        FakeSubscription.instances[0].queue.put_nowait(borrow_log(ALICE, 10))
        await asyncio.wait_for(ingestion.queue.join(), timeout=1)

        assert registry.is_active(ALICE)
        await ingestion.stop_listening()

    @pytest.mark.asyncio
    async def test_without_websocket_still_listens(self):
        ingestion, _ = make_ingestion()
        await ingestion.start_listening()
        assert ingestion.state == ListenerState.LISTENING
        await ingestion.stop_listening()

    @pytest.mark.asyncio
    async def test_malformed_push_does_not_stop_consumer(self):
        FakeSubscription.instances = []
        ingestion, registry = make_ingestion(ws_url="wss://node.test", subscription_factory=FakeSubscription)
        await ingestion.start_listening()

        broken = borrow_log(BOB, 9)
        del broken["address"]
        queue = FakeSubscription.instances[0].queue
        queue.put_nowait(broken)
        queue.put_nowait(borrow_log(ALICE, 10))
        await asyncio.wait_for(ingestion.queue.join(), timeout=1)

        assert registry.is_active(ALICE)
        assert not registry.is_active(BOB)
        assert not ingestion._consumer.done()
        await ingestion.stop_listening()

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_does_not_stop_consumer(self):
        ingestion, registry = make_ingestion()
        real_handle = ingestion.handle_log
        calls = []

        async def handle_log(raw):
            calls.append(raw)
            if len(calls) == 1:
                raise RuntimeError("boom")
            await real_handle(raw)

        ingestion.handle_log = handle_log
        await ingestion.start_listening()

        ingestion.queue.put_nowait(borrow_log(BOB, 9))
        ingestion.queue.put_nowait(borrow_log(ALICE, 10))
        await asyncio.wait_for(ingestion.queue.join(), timeout=1)

        assert registry.is_active(ALICE)
        assert not ingestion._consumer.done()
        await ingestion.stop_listening()

    @pytest.mark.asyncio
    async def test_stop_after_consumer_failure(self):
        ingestion, _ = make_ingestion()
        await ingestion.start_listening()
        ingestion._consumer.cancel()

        async def failed():
            raise KeyError("address")

        ingestion._consumer = asyncio.create_task(failed())
        await asyncio.sleep(0)

        await ingestion.stop_listening()

        assert ingestion.state == ListenerState.NOT_LISTENING
        assert ingestion._consumer is None
