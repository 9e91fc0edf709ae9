"""Strategy package for LIQBOT: circuit breaker, profitability, scanning, control loop."""

from strategy.circuit_breaker import CircuitBreaker
from strategy.profitability import ProfitEstimate, compute_repay_amount, estimate_profit
from strategy.scanner import OpportunityScanner, ScanResult

__all__ = [
    "CircuitBreaker",
    "OpportunityScanner",
    "ProfitEstimate",
    "ScanResult",
    "compute_repay_amount",
    "estimate_profit",
]
