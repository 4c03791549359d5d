"""
Execution ports: the exchange surface consumed by trade_core.

SimulatedExchange is deterministic and network-free; CcxtExchange talks to
a real exchange. The live adapter is imported lazily so replay and tests
never load ccxt.
"""

from execution.port import (
    Balance,
    ExchangeError,
    ExchangeTimeoutError,
    ExecutionPort,
    InsufficientFundsError,
    OrderNotFoundError,
    OrderResult,
    Ticker,
    UnsupportedOrderError,
)
from execution.simulated import SimulatedExchange

__all__ = [
    "Balance",
    "ExchangeError",
    "ExchangeTimeoutError",
    "ExecutionPort",
    "InsufficientFundsError",
    "OrderNotFoundError",
    "OrderResult",
    "SimulatedExchange",
    "Ticker",
    "UnsupportedOrderError",
    "get_ccxt_exchange",
]


def get_ccxt_exchange(exchange_id: str, symbol: str, **kwargs):
    """Lazy import to avoid loading ccxt when not used."""
    from execution.ccxt_exchange import CcxtExchange

    return CcxtExchange(exchange_id, symbol, **kwargs)
