"""Rolling window of fill slippage (relative deviation from the expected price)."""

from __future__ import annotations

import logging
from collections import deque

logger = logging.getLogger("trader.slippage")

DEFAULT_WINDOW = 100
DEFAULT_WARNING_THRESHOLD = 0.001


class SlippageTracker:
    """Keeps the last *window* slippage samples and flags large ones."""

    def __init__(self, *, window: int = DEFAULT_WINDOW, warning_threshold: float = DEFAULT_WARNING_THRESHOLD) -> None:
        self._samples: deque[float] = deque(maxlen=window)
        self._warning_threshold = warning_threshold

    @property
    def warning_threshold(self) -> float:
        return self._warning_threshold

    @property
    def samples(self) -> list[float]:
        return list(self._samples)

    def record(self, expected: float, actual: float) -> tuple[float, bool]:
        """Store one fill. Returns (slippage, exceeded_warning_threshold)."""
        if expected <= 0:
            raise ValueError(f"expected price must be positive, got {expected}")
        slippage = abs(actual - expected) / expected
        self._samples.append(slippage)
        exceeded = slippage > self._warning_threshold
        if exceeded:
            logger.warning(
                "High slippage %.4f%% (expected %.8f, filled %.8f)",
                slippage * 100, expected, actual,
            )
        return slippage, exceeded

    def average(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)
