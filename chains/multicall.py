"""
chains/multicall.py - Batched reads through Multicall3.

Many independent eth_calls are packed into one aggregate3 call with
allowFailure=true, so a revert in one inner call yields ok=False for that
call only. Results are always one-to-one with the input order.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from chains.abi import (
    SIG_BORROW_BALANCE_STORED,
    SIG_GET_UNDERLYING_PRICE,
    decode_aggregate3,
    decode_uint,
    encode_aggregate3,
    encode_call,
)
from chains.providers import RPCProvider
from core.constants import (
    DEFAULT_MULTICALL_CHUNK_SIZE,
    MULTICALL3_ADDRESS,
    BalanceVerdict,
)
from core.exceptions import DecodeError
from core.logging import get_logger
from core.models import Market

logger = get_logger("liqbot.multicall")


@dataclass(frozen=True)
class Call:
    """One read: target contract, calldata and an optional return decoder."""
    target: str
    data: bytes
    decoder: Optional[Callable[[bytes], Any]] = None


@dataclass(frozen=True)
class CallResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None


def uint_call(target: str, signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> Call:
    """Call returning a single uint256."""
    return Call(target=target, data=encode_call(signature, arg_types, args), decoder=decode_uint)


class BatchReader:
    """
    Aggregates read calls into Multicall3 round trips.

    A transport or outer-decode failure of a chunk propagates to the caller;
    callers treat that as "nothing known" for every call in the batch.
    """

    def __init__(
        self,
        provider: RPCProvider,
        multicall_address: str = MULTICALL3_ADDRESS,
        chunk_size: int = DEFAULT_MULTICALL_CHUNK_SIZE,
    ):
        self.provider = provider
        self.multicall_address = multicall_address
        self.chunk_size = max(1, chunk_size)

    async def batch(self, calls: Sequence[Call], block: Optional[int] = None) -> list[CallResult]:
        """
        Execute calls, one round trip per chunk.

        Args:
            calls: Reads to aggregate
            block: Block every chunk reads at; None reads the latest block

        Returns:
            CallResult per input call, in input order
        """
        results: list[CallResult] = []
        for start in range(0, len(calls), self.chunk_size):
            chunk = calls[start:start + self.chunk_size]
            results.extend(await self._run_chunk(chunk, block))
        return results

    async def _run_chunk(self, chunk: Sequence[Call], block: Optional[int] = None) -> list[CallResult]:
        calldata = encode_aggregate3([(c.target, c.data) for c in chunk])
        tag = "latest" if block is None else hex(block)
        raw = await self.provider.eth_call(self.multicall_address, calldata, block=tag)
        decoded = decode_aggregate3(raw)

        if len(decoded) != len(chunk):
            raise DecodeError(
                "Multicall result count mismatch",
                details={"expected": len(chunk), "got": len(decoded)},
            )

        out = []
        for call, (success, return_data) in zip(chunk, decoded):
            if not success:
                out.append(CallResult(ok=False, error="reverted"))
                continue
            if call.decoder is None:
                out.append(CallResult(ok=True, value=return_data))
                continue
            try:
                out.append(CallResult(ok=True, value=call.decoder(return_data)))
            except DecodeError as e:
                out.append(CallResult(ok=False, error=e.message))
        return out

    # ------------------------------------------------------------------
    # Read shapes
    # ------------------------------------------------------------------

    async def borrow_balances(
        self,
        borrowers: Sequence[str],
        markets: Sequence[Market],
        block: Optional[int] = None,
    ) -> dict[tuple[str, str], CallResult]:
        """borrowBalanceStored for every (borrower, market) pair."""
        keys = [(b, m.address) for b in borrowers for m in markets]
        calls = [
            uint_call(market, SIG_BORROW_BALANCE_STORED, ["address"], [borrower])
            for borrower, market in keys
        ]
        results = await self.batch(calls, block)
        return dict(zip(keys, results))

    async def prices(
        self,
        oracle: str,
        markets: Sequence[Market],
    ) -> dict[str, CallResult]:
        """Raw oracle prices keyed by market address."""
        calls = [
            uint_call(oracle, SIG_GET_UNDERLYING_PRICE, ["address"], [m.address])
            for m in markets
        ]
        results = await self.batch(calls)
        return {m.address: r for m, r in zip(markets, results)}

    async def sweep_balances(
        self,
        borrowers: Sequence[str],
        markets: Sequence[Market],
        block: Optional[int] = None,
    ) -> dict[str, BalanceVerdict]:
        """
        Classify each borrower by its borrow balances across markets.

        ACTIVE if any read is nonzero, ZERO only if every read succeeded with
        zero, UNKNOWN otherwise. With a block, every read is pinned to it.
        """
        balances = await self.borrow_balances(borrowers, markets, block)
        verdicts: dict[str, BalanceVerdict] = {}
        for borrower in borrowers:
            failed = False
            verdict = BalanceVerdict.ZERO
            for market in markets:
                result = balances[(borrower, market.address)]
                if not result.ok:
                    failed = True
                elif result.value > 0:
                    verdict = BalanceVerdict.ACTIVE
                    break
            if verdict != BalanceVerdict.ACTIVE and (failed or not markets):
                verdict = BalanceVerdict.UNKNOWN
            verdicts[borrower] = verdict
        return verdicts

    async def active_addresses(
        self,
        borrowers: Sequence[str],
        markets: Sequence[Market],
    ) -> set[str]:
        """Borrowers with at least one nonzero balance."""
        verdicts = await self.sweep_balances(borrowers, markets)
        return {b for b, v in verdicts.items() if v == BalanceVerdict.ACTIVE}
