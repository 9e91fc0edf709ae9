"""
Execution layer for LIQBOT.

- controller: sequential settlement of opportunities, counters
- settlement: flash-liquidation contract call (signed or dry run)
"""

from execution.controller import ExecutionController
from execution.settlement import (
    ContractSettlement,
    DryRunSettlement,
    SettlementAction,
    SettlementOutcome,
    build_settlement_calldata,
)

__all__ = [
    "ExecutionController",
    "ContractSettlement",
    "DryRunSettlement",
    "SettlementAction",
    "SettlementOutcome",
    "build_settlement_calldata",
]
