"""
chains/abi.py - ABI encoding for lending-market, oracle and Multicall3 calls.

Calldata is built with eth_abi; selectors and event topics come from
eth_utils keccak so signatures are the single source of truth.
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    function_signature_to_4byte_selector,
    keccak,
    to_checksum_address,
)

from core.constants import LendingEvent
from core.exceptions import DecodeError


def selector(signature: str) -> bytes:
    """4-byte function selector for a canonical signature."""
    return function_signature_to_4byte_selector(signature)


def event_topic(signature: str) -> str:
    """topic0 for a canonical event signature."""
    return encode_hex(keccak(text=signature))


# Function signatures
SIG_AGGREGATE3 = "aggregate3((address,bool,bytes)[])"
SIG_GET_ACCOUNT_LIQUIDITY = "getAccountLiquidity(address)"
SIG_BORROW_BALANCE_STORED = "borrowBalanceStored(address)"
SIG_BALANCE_OF = "balanceOf(address)"
SIG_EXCHANGE_RATE_STORED = "exchangeRateStored()"
SIG_GET_UNDERLYING_PRICE = "getUnderlyingPrice(address)"
SIG_CLOSE_FACTOR = "closeFactorMantissa()"
SIG_LIQUIDATION_INCENTIVE = "liquidationIncentiveMantissa()"
SIG_EXECUTE_LIQUIDATION = (
    "executeLiquidation(address,address,address,address,address,uint256,uint24,uint256)"
)

# Event signatures (Compound-style vTokens, all parameters non-indexed)
EVENT_SIGNATURES = {
    LendingEvent.BORROW: "Borrow(address,uint256,uint256,uint256)",
    LendingEvent.REPAY_BORROW: "RepayBorrow(address,address,uint256,uint256,uint256)",
    LendingEvent.LIQUIDATE_BORROW: "LiquidateBorrow(address,address,uint256,address,uint256)",
}

EVENT_DATA_TYPES = {
    LendingEvent.BORROW: ["address", "uint256", "uint256", "uint256"],
    LendingEvent.REPAY_BORROW: ["address", "address", "uint256", "uint256", "uint256"],
    LendingEvent.LIQUIDATE_BORROW: ["address", "address", "uint256", "address", "uint256"],
}

EVENT_TOPICS = {event: event_topic(sig) for event, sig in EVENT_SIGNATURES.items()}
TOPIC_TO_EVENT = {topic: event for event, topic in EVENT_TOPICS.items()}


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if not data or data == "0x":
        return b""
    return decode_hex(data)


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> bytes:
    """Selector followed by ABI-encoded arguments."""
    return selector(signature) + (encode(list(arg_types), list(args)) if arg_types else b"")


def encode_call_hex(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> str:
    return encode_hex(encode_call(signature, arg_types, args))


def decode_values(types: Sequence[str], data: Any) -> tuple:
    """
    Decode ABI return data.

    Raises:
        DecodeError: on empty or malformed data
    """
    raw = _as_bytes(data)
    if not raw:
        raise DecodeError("Empty return data", details={"types": list(types)})
    try:
        return decode(list(types), raw)
    except (DecodingError, ValueError, TypeError) as e:
        raise DecodeError(
            f"Failed to decode return data: {e}",
            details={"types": list(types), "length": len(raw)},
        ) from e


def decode_uint(data: Any) -> int:
    return decode_values(["uint256"], data)[0]


# =============================================================================
# Multicall3
# =============================================================================

def encode_aggregate3(calls: Sequence[tuple[str, bytes]]) -> str:
    """
    Encode aggregate3 calldata with allowFailure=true for every call.

    Args:
        calls: (target, calldata) pairs
    """
    payload = [(to_checksum_address(target), True, data) for target, data in calls]
    return encode_call_hex(SIG_AGGREGATE3, ["(address,bool,bytes)[]"], [payload])


def decode_aggregate3(data: Any) -> list[tuple[bool, bytes]]:
    """Decode aggregate3 return data into (success, returnData) pairs."""
    (results,) = decode_values(["(bool,bytes)[]"], data)
    return [(bool(success), bytes(ret)) for success, ret in results]


# =============================================================================
# Settlement
# =============================================================================

def encode_execute_liquidation(
    borrower: str,
    debt_token: str,
    collateral_token: str,
    v_debt_token: str,
    v_collateral_token: str,
    repay_amount: int,
    swap_fee: int,
    min_out_bps: int,
) -> str:
    return encode_call_hex(
        SIG_EXECUTE_LIQUIDATION,
        ["address", "address", "address", "address", "address", "uint256", "uint24", "uint256"],
        [
            to_checksum_address(borrower),
            to_checksum_address(debt_token),
            to_checksum_address(collateral_token),
            to_checksum_address(v_debt_token),
            to_checksum_address(v_collateral_token),
            repay_amount,
            swap_fee,
            min_out_bps,
        ],
    )


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class LendingLog:
    """A decoded Borrow / RepayBorrow / LiquidateBorrow log."""
    event: LendingEvent
    market: str
    borrower: str
    block_number: int
    tx_hash: str
    amount: int
    account_borrows: Optional[int] = None


def decode_lending_log(log: dict) -> LendingLog:
    """
    Decode a raw eth_getLogs / eth_subscribe log entry.

    Raises:
        DecodeError: unknown topic or malformed data
    """
    topics = log.get("topics") or []
    if not topics:
        raise DecodeError("Log without topics")

    event = TOPIC_TO_EVENT.get(topics[0].lower())
    if event is None:
        raise DecodeError("Unknown event topic", details={"topic": topics[0]})

    values = decode_values(EVENT_DATA_TYPES[event], log.get("data", "0x"))

    if event == LendingEvent.BORROW:
        borrower, amount, account_borrows = values[0], values[1], values[2]
    elif event == LendingEvent.REPAY_BORROW:
        borrower, amount, account_borrows = values[1], values[2], values[3]
    else:
        borrower, amount, account_borrows = values[1], values[2], None

    block = log.get("blockNumber", 0)
    try:
        return LendingLog(
            event=event,
            market=to_checksum_address(log["address"]),
            borrower=to_checksum_address(borrower),
            block_number=int(block, 16) if isinstance(block, str) else int(block),
            tx_hash=log.get("transactionHash", ""),
            amount=amount,
            account_borrows=account_borrows,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(
            f"Malformed log envelope: {e!r}",
            details={"event": event.value, "block": block},
        ) from e
