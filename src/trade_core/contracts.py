"""
Data contracts for trade-core: Candle, Signal, Position, Order, TradeRecord.

The ledger owns Position and the order audit trail; TradeRecord is the only
input to aggregate statistics. No I/O; these are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SignalAction(str, Enum):
    """What a signal source wants the engine to do."""

    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"
    HOLD = "hold"


class OrderStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class RiskState(str, Enum):
    """Engine risk lifecycle. EMERGENCY_STOPPED is terminal for an instance."""

    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    EMERGENCY_STOPPED = "EMERGENCY_STOPPED"


class CapitalMode(str, Enum):
    """Whether an engine owns a carved-out slice of capital or the whole account."""

    ISOLATED = "isolated"
    EXCLUSIVE = "exclusive"


# ---------------------------------------------------------------------------
# Market data and signals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candle:
    """Single OHLCV candle. Timestamp is the candle open time in UTC."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Signal:
    """Output of a signal source for one evaluation."""

    action: SignalAction
    price: float
    reason: str = ""
    stop_loss: float | None = None
    take_profit: float | None = None

    @classmethod
    def hold(cls, price: float, reason: str = "no setup") -> Signal:
        return cls(SignalAction.HOLD, price, reason)


# ---------------------------------------------------------------------------
# Ledger entities
# ---------------------------------------------------------------------------


@dataclass
class Position:
    """The single open long position of an engine instance."""

    entry_price: float
    amount: float
    current_price: float
    opened_at: datetime
    stop_loss: float | None = None
    take_profit: float | None = None
    protective_order_id: str | None = None
    unprotected: bool = False
    expected_price: float | None = None
    actual_fill_price: float | None = None
    slippage: float | None = None
    recovered: bool = False
    side: str = "long"
    unrealized_pnl: float = 0.0

    @property
    def notional(self) -> float:
        return self.entry_price * self.amount

    @property
    def market_value(self) -> float:
        return self.current_price * self.amount


@dataclass
class Order:
    """Audit-trail entry. Only status and filled change after creation."""

    id: str
    side: str  # "buy" | "sell"
    amount: float
    price: float | None
    timestamp: datetime
    order_type: str = "market"  # "market" | "stop"
    filled: float = 0.0
    status: OrderStatus = OrderStatus.OPEN


@dataclass(frozen=True)
class TradeRecord:
    """Immutable summary of one closed round trip. Profits are after fees."""

    entry_price: float
    exit_price: float
    amount: float
    entry_fee: float
    exit_fee: float
    gross_profit: float
    net_profit: float
    profit_pct: float
    win: bool
    reason: str
    opened_at: datetime
    closed_at: datetime
    expected_entry_price: float | None = None
    expected_exit_price: float | None = None
    entry_slippage: float | None = None
    exit_slippage: float | None = None

    @property
    def fees(self) -> float:
        return self.entry_fee + self.exit_fee

    @property
    def holding_minutes(self) -> float:
        return (self.closed_at - self.opened_at).total_seconds() / 60.0
