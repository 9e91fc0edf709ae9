# PATH: core/exceptions.py
"""
Typed exceptions for LIQBOT.

Transient infra errors vs ambiguous reads vs safety vs execution vs config.
Only ConfigError is allowed to abort the process.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Canonical error codes."""
    # Infrastructure (transient)
    INFRA_RPC_ERROR = "INFRA_RPC_ERROR"
    INFRA_TIMEOUT = "INFRA_TIMEOUT"
    INFRA_RATE_LIMIT = "INFRA_RATE_LIMIT"
    INFRA_NO_ENDPOINTS = "INFRA_NO_ENDPOINTS"
    INFRA_SUBSCRIPTION = "INFRA_SUBSCRIPTION"

    # Ambiguous state
    DECODE_ERROR = "DECODE_ERROR"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"

    # Safety
    CIRCUIT_BREAKER_TRIPPED = "CIRCUIT_BREAKER_TRIPPED"

    # Execution
    SETTLEMENT_REVERTED = "SETTLEMENT_REVERTED"
    SETTLEMENT_TIMEOUT = "SETTLEMENT_TIMEOUT"
    SETTLEMENT_ESTIMATE_FAILED = "SETTLEMENT_ESTIMATE_FAILED"
    SETTLEMENT_ERROR = "SETTLEMENT_ERROR"

    # Storage
    STORAGE_ERROR = "STORAGE_ERROR"

    # Fatal
    CONFIG_ERROR = "CONFIG_ERROR"

    UNKNOWN = "UNKNOWN"


class LiqbotError(Exception):
    """Base exception for LIQBOT."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self):
        return f"[{self.code.value}] {self.message}"


class InfraError(LiqbotError):
    """Infrastructure-related errors (RPC, timeouts, rate limits)."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INFRA_RPC_ERROR,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code, details)


class RPCError(InfraError):
    """RPC call returned an error object."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.INFRA_RPC_ERROR, details)


class RPCTimeoutError(InfraError):
    """RPC call timed out."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.INFRA_TIMEOUT, details)


class RateLimitError(InfraError):
    """Rate limit exceeded."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.INFRA_RATE_LIMIT, details)


class DecodeError(LiqbotError):
    """Return data could not be decoded."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.DECODE_ERROR, details)


class ProtocolError(LiqbotError):
    """Lending protocol returned a non-zero error code."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.PROTOCOL_ERROR, details)


class CircuitBreakerTripped(LiqbotError):
    """Safety interlock is tripped; decisioning must halt."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.CIRCUIT_BREAKER_TRIPPED, details)


class SettlementError(LiqbotError):
    """Settlement action failed (revert, timeout, estimation)."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.SETTLEMENT_ERROR,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code, details)


class StorageError(LiqbotError):
    """Durable store failure."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.STORAGE_ERROR, details)


class ConfigError(LiqbotError):
    """Missing or invalid configuration. Fatal at startup."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.CONFIG_ERROR, details)
