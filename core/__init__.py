"""
core - Core utilities and models for LIQBOT.

This package contains:
- models.py: Data models (Market, Position, Exposure, Opportunity, LiquidationRecord)
- constants.py: Enums, protocol constants and defaults
- exceptions.py: Typed exceptions with error codes
- math.py: Decimal conversions (no float money)
- time.py: Wall-clock and monotonic helpers
- logging.py: Structured JSON logging
"""

from core.constants import (
    BalanceVerdict,
    CircuitState,
    LendingEvent,
    ListenerState,
    RejectReason,
    SettlementStatus,
)
from core.exceptions import (
    CircuitBreakerTripped,
    ConfigError,
    DecodeError,
    ErrorCode,
    InfraError,
    LiqbotError,
    ProtocolError,
    RateLimitError,
    RPCError,
    RPCTimeoutError,
    SettlementError,
    StorageError,
)
from core.logging import get_logger, setup_logging
from core.models import (
    Exposure,
    ExposureKind,
    LiquidationRecord,
    Market,
    Opportunity,
    Position,
)

__all__ = [
    # Constants
    "BalanceVerdict",
    "CircuitState",
    "LendingEvent",
    "ListenerState",
    "RejectReason",
    "SettlementStatus",
    # Exceptions
    "CircuitBreakerTripped",
    "ConfigError",
    "DecodeError",
    "ErrorCode",
    "InfraError",
    "LiqbotError",
    "ProtocolError",
    "RateLimitError",
    "RPCError",
    "RPCTimeoutError",
    "SettlementError",
    "StorageError",
    # Models
    "Exposure",
    "ExposureKind",
    "LiquidationRecord",
    "Market",
    "Opportunity",
    "Position",
    # Logging
    "get_logger",
    "setup_logging",
]
