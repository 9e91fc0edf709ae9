# PATH: core/constants.py
"""
Constants for LIQBOT.

Contains enums, protocol constants and configuration defaults.
"""

from decimal import Decimal
from enum import Enum
from typing import Final

# =============================================================================
# CHAIN / PROTOCOL CONSTANTS
# =============================================================================

# Multicall3 is deployed at the same address on BSC and most EVM chains
MULTICALL3_ADDRESS: Final[str] = "0xcA11bde05977b3631167028862bE2a173976CA11"

ZERO_ADDRESS: Final[str] = "0x0000000000000000000000000000000000000000"

# Compound-style mantissas are scaled by 1e18
MANTISSA_ONE: Final[int] = 10**18
WEI_PER_NATIVE: Final[int] = 10**18

# =============================================================================
# DEFAULTS
# =============================================================================

# Profitability
DEFAULT_MIN_PROFIT_NATIVE: Final[Decimal] = Decimal("0.01")
DEFAULT_MAX_LIQUIDATION_SIZE_NATIVE: Final[Decimal] = Decimal("100")
DEFAULT_SWAP_SLIPPAGE: Final[Decimal] = Decimal("0.01")  # 1%
DEFAULT_SWAP_FEE_TIER = 2500  # 0.25% pool
DEFAULT_MIN_OUT_BPS = 100

# Gas
DEFAULT_GAS_LIMIT = 800_000
DEFAULT_GAS_BUFFER_PERCENT = 20
DEFAULT_GAS_PRICE_GWEI: Final[Decimal] = Decimal("3")

# Safety interlock
DEFAULT_MAX_PRICE_CHANGE_PERCENT: Final[Decimal] = Decimal("30")
DEFAULT_PRICE_HISTORY_SIZE = 10

# Scanning
DEFAULT_MAX_CONCURRENT_CHECKS = 5
DEFAULT_MAX_BORROWERS_PER_SCAN = 25
DEFAULT_POLLING_INTERVAL_SECONDS = 10.0
DEFAULT_COOLDOWN_SECONDS = 5.0

# Registry maintenance
DEFAULT_PRUNING_INTERVAL_SECONDS = 300.0
DEFAULT_REPAY_LEASE_SECONDS = 1.0
DEFAULT_RETENTION_DAYS = 30

# Event backfill
DEFAULT_STARTUP_LOOKBACK_BLOCKS = 5000
DEFAULT_HISTORICAL_CATCH_INTERVAL_SECONDS = 3600.0
DEFAULT_HISTORICAL_CATCH_BLOCKS = 10_000
DEFAULT_LOG_CHUNK_BLOCKS = 2000

# RPC
DEFAULT_RPC_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_ROTATION_REQUESTS = 100
DEFAULT_ROTATION_SECONDS = 300.0
DEFAULT_MAX_IN_FLIGHT = 10
DEFAULT_MULTICALL_CHUNK_SIZE = 500
DEFAULT_SETTLEMENT_TIMEOUT_SECONDS = 120.0


class CircuitState(str, Enum):
    """Safety interlock state."""
    OPERATIONAL = "OPERATIONAL"
    TRIPPED = "TRIPPED"


class ListenerState(str, Enum):
    """Event ingestion state."""
    NOT_LISTENING = "NOT_LISTENING"
    LISTENING = "LISTENING"


class LendingEvent(str, Enum):
    """vToken events consumed by ingestion."""
    BORROW = "Borrow"
    REPAY_BORROW = "RepayBorrow"
    LIQUIDATE_BORROW = "LiquidateBorrow"


class BalanceVerdict(str, Enum):
    """Outcome of a batched balance sweep for one borrower."""
    ACTIVE = "ACTIVE"    # at least one nonzero balance
    ZERO = "ZERO"        # every read succeeded and returned zero
    UNKNOWN = "UNKNOWN"  # no nonzero balance, but some read failed


class SettlementStatus(str, Enum):
    """Settlement attempt outcome."""
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    TIMEOUT = "TIMEOUT"
    FAILED = "FAILED"
    SKIPPED_STALE = "SKIPPED_STALE"
    DRY_RUN = "DRY_RUN"


class RejectReason(str, Enum):
    """Why a candidate did not become an opportunity."""
    NO_SHORTFALL = "NO_SHORTFALL"
    NO_DEBT = "NO_DEBT"
    NO_COLLATERAL = "NO_COLLATERAL"
    MISSING_PRICE = "MISSING_PRICE"
    PNL_BELOW_THRESHOLD = "PNL_BELOW_THRESHOLD"
    READ_FAILED = "READ_FAILED"
    STOPPED = "STOPPED"
