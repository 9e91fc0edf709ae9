"""
execution/settlement.py - Calls into the flash-liquidation contract.

The contract is opaque: one executeLiquidation call flash-borrows the debt
asset, liquidates, swaps the seized collateral back and repays. This module
only builds, signs and submits that call.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from eth_account import Account
from eth_utils import encode_hex

from chains.abi import encode_execute_liquidation
from chains.providers import RPCProvider
from core.constants import (
    DEFAULT_GAS_LIMIT,
    DEFAULT_SETTLEMENT_TIMEOUT_SECONDS,
    ZERO_ADDRESS,
    SettlementStatus,
)
from core.exceptions import ErrorCode, LiqbotError, SettlementError
from core.logging import get_logger
from core.models import Market, Opportunity

logger = get_logger("liqbot.settlement")


@dataclass
class SettlementOutcome:
    status: SettlementStatus
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SettlementStatus.CONFIRMED


class SettlementAction(Protocol):
    async def estimate_gas(self, opportunity: Opportunity) -> int: ...

    async def execute(self, opportunity: Opportunity, gas_limit: int) -> SettlementOutcome: ...


def _underlying(market: Market, native_token: str) -> str:
    return native_token if market.is_native else market.underlying


def build_settlement_calldata(opportunity: Opportunity, native_token: str = ZERO_ADDRESS) -> str:
    return encode_execute_liquidation(
        borrower=opportunity.borrower,
        debt_token=_underlying(opportunity.debt_market, native_token),
        collateral_token=_underlying(opportunity.collateral_market, native_token),
        v_debt_token=opportunity.debt_market.address,
        v_collateral_token=opportunity.collateral_market.address,
        repay_amount=opportunity.repay_amount_raw,
        swap_fee=opportunity.swap_fee,
        min_out_bps=opportunity.min_out_bps,
    )


class ContractSettlement:
    """Signs executeLiquidation with the operator key and waits for the receipt."""

    def __init__(
        self,
        provider: RPCProvider,
        contract_address: str,
        private_key: str,
        chain_id: int,
        native_token: str = ZERO_ADDRESS,
        receipt_timeout_seconds: float = DEFAULT_SETTLEMENT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = 2.0,
        sleep: Callable = asyncio.sleep,
    ):
        self.provider = provider
        self.contract_address = contract_address
        self.chain_id = chain_id
        self.native_token = native_token
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._account = Account.from_key(private_key)

    @property
    def sender(self) -> str:
        return self._account.address

    def _call(self, opportunity: Opportunity) -> dict:
        return {
            "from": self.sender,
            "to": self.contract_address,
            "data": build_settlement_calldata(opportunity, self.native_token),
        }

    async def estimate_gas(self, opportunity: Opportunity) -> int:
        try:
            return await self.provider.estimate_gas(self._call(opportunity))
        except LiqbotError as e:
            raise SettlementError(
                f"Gas estimation failed: {e}",
                code=ErrorCode.SETTLEMENT_ESTIMATE_FAILED,
                details={"borrower": opportunity.borrower},
            ) from e

    async def execute(self, opportunity: Opportunity, gas_limit: int) -> SettlementOutcome:
        call = self._call(opportunity)
        try:
            nonce = await self.provider.get_transaction_count(self.sender)
            tx = {
                "to": call["to"],
                "data": call["data"],
                "value": 0,
                "gas": gas_limit,
                "gasPrice": opportunity.gas_price_wei,
                "nonce": nonce,
                "chainId": self.chain_id,
            }
            signed = self._account.sign_transaction(tx)
            tx_hash = await self.provider.send_raw_transaction(encode_hex(signed.raw_transaction))
        except LiqbotError as e:
            raise SettlementError(
                f"Submission failed: {e}",
                details={"borrower": opportunity.borrower},
            ) from e

        logger.info(
            "Settlement submitted",
            extra={"context": {"tx_hash": tx_hash, "borrower": opportunity.borrower, "gas_limit": gas_limit}},
        )

        receipt = await self._wait_for_receipt(tx_hash)
        if receipt is None:
            return SettlementOutcome(
                status=SettlementStatus.TIMEOUT,
                tx_hash=tx_hash,
                error=f"No receipt after {self.receipt_timeout_seconds}s",
            )

        gas_used = int(receipt.get("gasUsed", "0x0"), 16)
        if int(receipt.get("status", "0x0"), 16) == 1:
            return SettlementOutcome(SettlementStatus.CONFIRMED, tx_hash=tx_hash, gas_used=gas_used)
        return SettlementOutcome(
            SettlementStatus.REVERTED,
            tx_hash=tx_hash,
            gas_used=gas_used,
            error="Transaction reverted",
        )

    async def _wait_for_receipt(self, tx_hash: str) -> Optional[dict]:
        waited = 0.0
        while waited < self.receipt_timeout_seconds:
            try:
                receipt = await self.provider.get_transaction_receipt(tx_hash)
            except LiqbotError as e:
                logger.debug(f"Receipt poll failed: {e}")
                receipt = None
            if receipt:
                return receipt
            await self._sleep(self.poll_interval_seconds)
            waited += self.poll_interval_seconds
        return None


class DryRunSettlement:
    """Logs what would be sent. Never signs or submits."""

    def __init__(
        self,
        native_token: str = ZERO_ADDRESS,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        max_recorded: int = 100,
    ):
        self.native_token = native_token
        self.gas_limit = gas_limit
        # most recent calldata only
        self.calls: deque[str] = deque(maxlen=max_recorded)

    async def estimate_gas(self, opportunity: Opportunity) -> int:
        return self.gas_limit

    async def execute(self, opportunity: Opportunity, gas_limit: int) -> SettlementOutcome:
        calldata = build_settlement_calldata(opportunity, self.native_token)
        self.calls.append(calldata)
        logger.info(
            "[DRY RUN] Would execute liquidation",
            extra={"context": {**opportunity.to_dict(), "gas_limit": gas_limit, "calldata": calldata[:74]}},
        )
        return SettlementOutcome(SettlementStatus.DRY_RUN)
