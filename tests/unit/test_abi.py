"""
tests/unit/test_abi.py - Calldata encoding and log decoding.
"""

import pytest
from eth_abi import decode, encode
from eth_utils import decode_hex, encode_hex, to_checksum_address

from chains.abi import (
    EVENT_TOPICS,
    SIG_BALANCE_OF,
    SIG_BORROW_BALANCE_STORED,
    SIG_GET_ACCOUNT_LIQUIDITY,
    decode_aggregate3,
    decode_lending_log,
    decode_uint,
    decode_values,
    encode_aggregate3,
    encode_call,
    encode_call_hex,
    encode_execute_liquidation,
    selector,
)
from core.constants import LendingEvent
from core.exceptions import DecodeError

BORROWER = "0x1111111111111111111111111111111111111111"
PAYER = "0x2222222222222222222222222222222222222222"
MARKET = to_checksum_address("0xfd5840cd36d94d7229439859c0112a4185bc0255")


class TestSelectors:

    def test_known_selectors(self):
        assert encode_hex(selector(SIG_BALANCE_OF)) == "0x70a08231"
        assert encode_hex(selector(SIG_GET_ACCOUNT_LIQUIDITY)) == "0x5ec88c79"
        assert encode_hex(selector(SIG_BORROW_BALANCE_STORED)) == "0x95dd9193"

    def test_known_event_topics(self):
        assert EVENT_TOPICS[LendingEvent.BORROW] == (
            "0x13ed6866d4e1ee6da46f845c46d7e54120883d75c5ea9a2dacc1c4ca8984ab80"
        )
        assert EVENT_TOPICS[LendingEvent.REPAY_BORROW] == (
            "0x1a2a22cb034d26d1854bdc6666a5b91fe25efbbb5dcad3b0355478d6f5c362a1"
        )

    def test_encode_call_appends_args(self):
        data = encode_call(SIG_BALANCE_OF, ["address"], [BORROWER])
        assert data[:4] == selector(SIG_BALANCE_OF)
        assert len(data) == 4 + 32

    def test_encode_call_without_args(self):
        assert encode_call_hex("exchangeRateStored()") == "0x182df0f5"


class TestDecode:

    def test_decode_uint(self):
        assert decode_uint(encode_hex(encode(["uint256"], [42]))) == 42

    def test_decode_bytes_input(self):
        assert decode_uint(encode(["uint256"], [7])) == 7

    def test_empty_data_raises(self):
        with pytest.raises(DecodeError):
            decode_values(["uint256"], "0x")

    def test_malformed_data_raises(self):
        with pytest.raises(DecodeError):
            decode_values(["uint256", "uint256"], "0x01")


class TestAggregate3:

    def test_roundtrip_with_failure_flag(self):
        calldata = encode_aggregate3([(MARKET.lower(), b"\x01\x02")])
        (calls,) = decode(["(address,bool,bytes)[]"], decode_hex(calldata)[4:])
        target, allow_failure, data = calls[0]
        assert target == MARKET
        assert allow_failure is True
        assert data == b"\x01\x02"

        returned = encode(["(bool,bytes)[]"], [[(True, b"\xaa"), (False, b"")]])
        assert decode_aggregate3(returned) == [(True, b"\xaa"), (False, b"")]


class TestExecuteLiquidation:

    def test_calldata_layout(self):
        calldata = encode_execute_liquidation(
            borrower=BORROWER,
            debt_token=PAYER,
            collateral_token=PAYER,
            v_debt_token=MARKET,
            v_collateral_token=MARKET,
            repay_amount=10**18,
            swap_fee=2500,
            min_out_bps=100,
        )
        raw = decode_hex(calldata)
        values = decode(
            ["address", "address", "address", "address", "address", "uint256", "uint24", "uint256"],
            raw[4:],
        )
        assert values[0].lower() == BORROWER
        assert values[5] == 10**18
        assert values[6] == 2500
        assert values[7] == 100


def _log(event: LendingEvent, data: bytes, block="0x10") -> dict:
    return {
        "address": MARKET.lower(),
        "topics": [EVENT_TOPICS[event]],
        "data": encode_hex(data),
        "blockNumber": block,
        "transactionHash": "0xfeed",
    }


class TestLendingLog:

    def test_borrow(self):
        data = encode(["address", "uint256", "uint256", "uint256"], [BORROWER, 5, 50, 500])
        log = decode_lending_log(_log(LendingEvent.BORROW, data))

        assert log.event == LendingEvent.BORROW
        assert log.borrower.lower() == BORROWER
        assert log.market == MARKET
        assert log.amount == 5
        assert log.account_borrows == 50
        assert log.block_number == 16

    def test_repay_borrower_is_second_word(self):
        data = encode(
            ["address", "address", "uint256", "uint256", "uint256"],
            [PAYER, BORROWER, 5, 0, 0],
        )
        log = decode_lending_log(_log(LendingEvent.REPAY_BORROW, data, block=123))

        assert log.event == LendingEvent.REPAY_BORROW
        assert log.borrower.lower() == BORROWER
        assert log.account_borrows == 0
        assert log.block_number == 123

    def test_liquidate_borrower_is_second_word(self):
        data = encode(
            ["address", "address", "uint256", "address", "uint256"],
            [PAYER, BORROWER, 5, MARKET, 9],
        )
        log = decode_lending_log(_log(LendingEvent.LIQUIDATE_BORROW, data))

        assert log.event == LendingEvent.LIQUIDATE_BORROW
        assert log.borrower.lower() == BORROWER
        assert log.account_borrows is None

    def test_unknown_topic(self):
        entry = _log(LendingEvent.BORROW, b"")
        entry["topics"] = ["0x" + "00" * 32]
        with pytest.raises(DecodeError):
            decode_lending_log(entry)

    def test_missing_topics(self):
        with pytest.raises(DecodeError):
            decode_lending_log({"address": MARKET, "topics": [], "data": "0x"})

    def test_missing_address_raises_decode_error(self):
        data = encode(["address", "uint256", "uint256", "uint256"], [BORROWER, 5, 50, 500])
        entry = _log(LendingEvent.BORROW, data)
        del entry["address"]
        with pytest.raises(DecodeError):
            decode_lending_log(entry)

    def test_bad_block_number_raises_decode_error(self):
        data = encode(["address", "uint256", "uint256", "uint256"], [BORROWER, 5, 50, 500])
        with pytest.raises(DecodeError):
            decode_lending_log(_log(LendingEvent.BORROW, data, block="latest"))
