"""
Strategies: independent SignalSource implementations selected by name.
"""

from __future__ import annotations

from typing import Any, Callable

from strategies.base import SignalSource
from strategies.ema_crossover import EmaCrossoverStrategy
from strategies.mean_reversion import MeanReversionStrategy

STRATEGIES: dict[str, Callable[..., SignalSource]] = {
    EmaCrossoverStrategy.name: EmaCrossoverStrategy,
    MeanReversionStrategy.name: MeanReversionStrategy,
}


def get_strategy(name: str, **params: Any) -> SignalSource:
    """Build the strategy registered under *name* with keyword *params*."""
    try:
        factory = STRATEGIES[name]
    except KeyError:
        known = ", ".join(sorted(STRATEGIES))
        raise ValueError(f"Unknown strategy {name!r} (available: {known})") from None
    return factory(**params)


__all__ = [
    "EmaCrossoverStrategy",
    "MeanReversionStrategy",
    "STRATEGIES",
    "SignalSource",
    "get_strategy",
]
