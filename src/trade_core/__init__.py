"""
trade-core: position lifecycle and risk control.

Ledger (at most one position, trade history), risk controller (real
baseline, drawdown, emergency stop), execution engine and startup
reconciliation. Exchange access goes through execution.port.
"""

from trade_core.contracts import (
    Candle,
    CapitalMode,
    Order,
    OrderStatus,
    Position,
    RiskState,
    Signal,
    SignalAction,
    TradeRecord,
)
from trade_core.errors import (
    AlreadyOpenError,
    ExecutionAbortedError,
    LedgerError,
    NoPositionError,
    TradeCoreError,
)
from trade_core.ledger import PositionLedger
from trade_core.metrics import PROFIT_FACTOR_CAP, TradeStatistics, compute_statistics
from trade_core.risk_controller import RiskController
from trade_core.safety import SafetyGuard, SafetyResult
from trade_core.slippage import SlippageTracker
from trade_core.engine import EngineStats, ExecutionEngine, TickOutcome
from trade_core.reconciliation import ReconciliationReport, reconcile

__all__ = [
    "AlreadyOpenError",
    "Candle",
    "CapitalMode",
    "EngineStats",
    "ExecutionAbortedError",
    "ExecutionEngine",
    "LedgerError",
    "NoPositionError",
    "Order",
    "OrderStatus",
    "PROFIT_FACTOR_CAP",
    "Position",
    "PositionLedger",
    "ReconciliationReport",
    "RiskController",
    "RiskState",
    "SafetyGuard",
    "SafetyResult",
    "Signal",
    "SignalAction",
    "SlippageTracker",
    "TickOutcome",
    "TradeCoreError",
    "TradeRecord",
    "TradeStatistics",
    "compute_statistics",
    "reconcile",
]
