"""
lending/venus.py - Compound-style (Venus) protocol reads.

All per-account state needed to evaluate a liquidation is read in one
Multicall3 batch: account liquidity, per-market borrow balance, vToken
balance, exchange rate and oracle price, plus the comptroller's close
factor and liquidation incentive.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Sequence

from chains.abi import (
    SIG_BALANCE_OF,
    SIG_BORROW_BALANCE_STORED,
    SIG_CLOSE_FACTOR,
    SIG_EXCHANGE_RATE_STORED,
    SIG_GET_ACCOUNT_LIQUIDITY,
    SIG_GET_UNDERLYING_PRICE,
    SIG_LIQUIDATION_INCENTIVE,
    decode_values,
    encode_call,
    encode_call_hex,
)
from chains.multicall import BatchReader, Call, CallResult, uint_call
from chains.providers import RPCProvider
from core.constants import DEFAULT_GAS_PRICE_GWEI, MANTISSA_ONE
from core.exceptions import ConfigError, LiqbotError, ProtocolError
from core.logging import get_logger
from core.math import mantissa_to_decimal, normalize_to_decimals, oracle_price_to_decimal
from core.models import Exposure, ExposureKind, Market

logger = get_logger("liqbot.venus")


def _decode_account_liquidity(data: bytes) -> tuple[int, int, int]:
    return decode_values(["uint256", "uint256", "uint256"], data)


@dataclass
class AccountSnapshot:
    """Point-in-time view of one borrower across all tracked markets."""
    borrower: str
    liquidity: Decimal
    shortfall: Decimal
    close_factor: Decimal
    liquidation_incentive: Decimal
    debts: list[Exposure] = field(default_factory=list)
    collaterals: list[Exposure] = field(default_factory=list)
    prices: dict[str, Decimal] = field(default_factory=dict)


class VenusAdapter:
    """Read access to a comptroller, its oracle and its vToken markets."""

    def __init__(
        self,
        provider: RPCProvider,
        reader: BatchReader,
        comptroller: str,
        oracle: str,
        markets: Sequence[Market],
        fallback_gas_price_gwei: Decimal = DEFAULT_GAS_PRICE_GWEI,
    ):
        self.provider = provider
        self.reader = reader
        self.comptroller = comptroller
        self.oracle = oracle
        self.markets = list(markets)
        self.fallback_gas_price_wei = int(Decimal(str(fallback_gas_price_gwei)) * 10**9)

        native = [m for m in self.markets if m.is_native]
        if not native:
            raise ConfigError(
                "No native market configured (underlying must be the zero address)",
                details={"markets": [m.symbol for m in self.markets]},
            )
        self.native_market = native[0]
        self._by_address = {m.address.lower(): m for m in self.markets}

    def market_by_address(self, address: str) -> Optional[Market]:
        return self._by_address.get(address.lower())

    # ------------------------------------------------------------------
    # Point reads
    # ------------------------------------------------------------------

    async def get_account_liquidity(self, borrower: str) -> tuple[Decimal, Decimal]:
        """
        Comptroller getAccountLiquidity.

        Returns:
            (liquidity, shortfall) in USD

        Raises:
            ProtocolError: comptroller reported an error code
        """
        raw = await self.provider.eth_call(
            self.comptroller,
            encode_call_hex(SIG_GET_ACCOUNT_LIQUIDITY, ["address"], [borrower]),
        )
        err, liquidity, shortfall = _decode_account_liquidity(raw)
        if err != 0:
            raise ProtocolError(
                f"getAccountLiquidity error {err}",
                details={"borrower": borrower},
            )
        return mantissa_to_decimal(liquidity), mantissa_to_decimal(shortfall)

    async def get_shortfall(self, borrower: str) -> Decimal:
        _, shortfall = await self.get_account_liquidity(borrower)
        return shortfall

    async def borrow_balance(self, borrower: str, market: Market) -> int:
        """Authoritative borrowBalanceStored for one market, raw units."""
        raw = await self.provider.eth_call(
            market.address,
            encode_call_hex(SIG_BORROW_BALANCE_STORED, ["address"], [borrower]),
        )
        return decode_values(["uint256"], raw)[0]

    async def get_prices(self) -> dict[str, CallResult]:
        """Raw oracle reads for every tracked market, keyed by market address."""
        return await self.reader.prices(self.oracle, self.markets)

    async def gas_price_wei(self) -> int:
        """Node gas price, falling back to the configured default."""
        try:
            price = await self.provider.get_gas_price()
        except LiqbotError as e:
            logger.warning(
                f"Gas price read failed, using fallback: {e}",
                extra={"context": {"fallback_wei": self.fallback_gas_price_wei}},
            )
            return self.fallback_gas_price_wei
        return price if price > 0 else self.fallback_gas_price_wei

    # ------------------------------------------------------------------
    # Batched account snapshot
    # ------------------------------------------------------------------

    def _snapshot_calls(self, borrower: str) -> list[Call]:
        calls = [
            Call(
                target=self.comptroller,
                data=encode_call(SIG_GET_ACCOUNT_LIQUIDITY, ["address"], [borrower]),
                decoder=_decode_account_liquidity,
            ),
            uint_call(self.comptroller, SIG_CLOSE_FACTOR),
            uint_call(self.comptroller, SIG_LIQUIDATION_INCENTIVE),
        ]
        for market in self.markets:
            calls.extend([
                uint_call(market.address, SIG_BORROW_BALANCE_STORED, ["address"], [borrower]),
                uint_call(market.address, SIG_BALANCE_OF, ["address"], [borrower]),
                uint_call(market.address, SIG_EXCHANGE_RATE_STORED),
                uint_call(self.oracle, SIG_GET_UNDERLYING_PRICE, ["address"], [market.address]),
            ])
        return calls

    async def account_snapshot(self, borrower: str) -> AccountSnapshot:
        """
        Read everything needed to evaluate one borrower in a single batch.

        Raises:
            ProtocolError: any inner read failed (state is ambiguous)
            InfraError: the batch itself failed
        """
        results = await self.reader.batch(self._snapshot_calls(borrower))
        failed = [i for i, r in enumerate(results) if not r.ok]
        if failed:
            raise ProtocolError(
                "Account snapshot incomplete",
                details={"borrower": borrower, "failed_calls": failed},
            )

        err, liquidity, shortfall = results[0].value
        if err != 0:
            raise ProtocolError(
                f"getAccountLiquidity error {err}",
                details={"borrower": borrower},
            )

        snapshot = AccountSnapshot(
            borrower=borrower,
            liquidity=mantissa_to_decimal(liquidity),
            shortfall=mantissa_to_decimal(shortfall),
            close_factor=mantissa_to_decimal(results[1].value),
            liquidation_incentive=mantissa_to_decimal(results[2].value),
        )

        for index, market in enumerate(self.markets):
            borrow_raw, vtoken_raw, rate_raw, price_raw = (
                r.value for r in results[3 + index * 4: 7 + index * 4]
            )
            price = oracle_price_to_decimal(price_raw, market.decimals)
            snapshot.prices[market.address] = price

            if borrow_raw > 0:
                snapshot.debts.append(Exposure(
                    kind=ExposureKind.DEBT,
                    market=market,
                    amount=normalize_to_decimals(borrow_raw, market.decimals),
                    price=price,
                ))
            if vtoken_raw > 0:
                underlying_raw = vtoken_raw * rate_raw // MANTISSA_ONE
                snapshot.collaterals.append(Exposure(
                    kind=ExposureKind.COLLATERAL,
                    market=market,
                    amount=normalize_to_decimals(underlying_raw, market.decimals),
                    price=price,
                ))

        return snapshot
