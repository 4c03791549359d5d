"""
Execution port: the exchange surface the engine consumes.

Two implementations: SimulatedExchange (deterministic, network-free) and
CcxtExchange (live). Every call that touches an exchange is async; precision
and minimums are answered locally from market metadata.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ExchangeError(Exception):
    """Exchange or network call failed. Transient: retried on the next tick."""


class ExchangeTimeoutError(ExchangeError):
    """A call did not complete within its timeout."""


class OrderNotFoundError(ExchangeError):
    """The exchange does not know the order (already gone or never existed)."""


class UnsupportedOrderError(ExchangeError):
    """The exchange rejects the order type, e.g. stop orders on some markets."""


class InsufficientFundsError(ExchangeError):
    """Not enough balance for the order."""


# ---------------------------------------------------------------------------
# Port data types
# ---------------------------------------------------------------------------


ORDER_OPEN = "open"
ORDER_CLOSED = "closed"
ORDER_CANCELLED = "cancelled"


@dataclass(frozen=True)
class Balance:
    quote_free: float
    quote_total: float
    base_free: float
    base_total: float


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last: float
    timestamp: datetime | None = None


@dataclass(frozen=True)
class OrderResult:
    """Exchange view of an order at the time of the call."""

    id: str
    side: str
    amount: float
    status: str  # ORDER_OPEN | ORDER_CLOSED | ORDER_CANCELLED
    filled: float = 0.0
    average: float | None = None
    order_type: str = "market"
    stop_price: float | None = None
    timestamp: datetime | None = None

    @property
    def is_filled(self) -> bool:
        return self.status == ORDER_CLOSED and self.filled > 0 and self.average is not None

    @property
    def is_protective(self) -> bool:
        return self.side == "sell" and self.stop_price is not None


@runtime_checkable
class ExecutionPort(Protocol):
    """Exchange operations for one base/quote pair."""

    symbol: str

    async def connect(self) -> None:
        """Load market metadata. Safe to call more than once."""
        ...

    async def close(self) -> None:
        ...

    async def fetch_balance(self) -> Balance:
        ...

    async def fetch_ticker(self) -> Ticker:
        ...

    async def create_market_order(self, side: str, amount: float) -> OrderResult:
        """Submit a market order. May return a pending (open) result to poll later."""
        ...

    async def place_protective_stop(self, amount: float, stop_price: float) -> OrderResult:
        """Place a resident sell stop. May raise UnsupportedOrderError."""
        ...

    async def cancel_order(self, order_id: str) -> None:
        ...

    async def fetch_order(self, order_id: str) -> OrderResult:
        ...

    async def fetch_open_orders(self) -> list[OrderResult]:
        ...

    def amount_to_precision(self, amount: float) -> float:
        """Round *amount* down to the exchange lot precision."""
        ...

    @property
    def min_order_amount(self) -> float:
        ...
