"""
Signal source boundary.

A strategy turns recent candles plus the current price into a Signal. It may
keep its own belief about whether it holds a position but never calls back
into execution.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from trade_core.contracts import Candle, Signal


@runtime_checkable
class SignalSource(Protocol):
    name: str

    def analyze(self, candles: Sequence[Candle], current_price: float) -> Signal:
        """Return buy/sell/close/hold for the latest state of the market."""
        ...

    def restore_position(self, entry_price: float, current_price: float) -> None:
        """Adopt a position recovered at startup as if this strategy had opened it."""
        ...

    def clear_position(self) -> None:
        """Forget any held position (the engine is flat, e.g. after a stop fill or a rejected entry)."""
        ...
