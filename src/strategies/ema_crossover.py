"""
EMA crossover: trend entries on a fast/slow EMA cross.

Buy when the fast EMA crosses above the slow EMA with ADX above threshold,
volume above its average and price above the slow EMA. Stop and target are
ATR multiples from the entry price. Close on the opposite cross.
"""

from __future__ import annotations

from typing import Sequence

from strategies import indicators as ind
from trade_core.contracts import Candle, Signal, SignalAction


class EmaCrossoverStrategy:
    """Trend following: fast EMA crossing the slow EMA, confirmed by volume and ADX."""

    name = "ema_crossover"

    def __init__(
        self,
        *,
        fast_period: int = 9,
        slow_period: int = 21,
        volume_period: int = 20,
        adx_period: int = 14,
        atr_period: int = 14,
        volume_multiplier: float = 1.2,
        adx_threshold: float = 20.0,
        atr_stop_multiplier: float = 1.0,
        atr_target_multiplier: float = 2.0,
    ) -> None:
        if fast_period >= slow_period:
            raise ValueError(f"fast_period ({fast_period}) must be < slow_period ({slow_period})")
        self.fast_period = fast_period
        self.slow_period = slow_period
        self.volume_period = volume_period
        self.adx_period = adx_period
        self.atr_period = atr_period
        self.volume_multiplier = volume_multiplier
        self.adx_threshold = adx_threshold
        self.atr_stop_multiplier = atr_stop_multiplier
        self.atr_target_multiplier = atr_target_multiplier

    @property
    def required_candles(self) -> int:
        return max(self.slow_period, self.volume_period, self.adx_period, self.atr_period) + 10

    def restore_position(self, entry_price: float, current_price: float) -> None:
        # Exits are driven by the cross alone; nothing to restore.
        return None

    def clear_position(self) -> None:
        return None

    def analyze(self, candles: Sequence[Candle], current_price: float) -> Signal:
        if len(candles) < self.required_candles:
            return Signal.hold(current_price, "insufficient data")

        values = ind.closes(candles)
        fast = ind.ema_series(values, self.fast_period)
        slow = ind.ema_series(values, self.slow_period)
        adx = ind.adx(candles, self.adx_period)
        atr = ind.atr(candles, self.atr_period)
        vol_ratio = ind.volume_ratio(candles, self.volume_period)
        if None in (fast[-1], fast[-2], slow[-1], slow[-2], adx, atr, vol_ratio):
            return Signal.hold(current_price, "indicators not ready")

        bullish = fast[-2] <= slow[-2] and fast[-1] > slow[-1]
        bearish = fast[-2] >= slow[-2] and fast[-1] < slow[-1]
        trending = adx > self.adx_threshold

        if bullish and trending and vol_ratio > self.volume_multiplier and current_price > slow[-1]:
            return Signal(
                SignalAction.BUY,
                current_price,
                f"EMA cross up: fast {fast[-1]:.2f} > slow {slow[-1]:.2f}, ADX {adx:.1f}, vol {vol_ratio:.2f}x",
                stop_loss=current_price - atr * self.atr_stop_multiplier,
                take_profit=current_price + atr * self.atr_target_multiplier,
            )
        if bearish:
            return Signal(
                SignalAction.CLOSE,
                current_price,
                f"EMA cross down: fast {fast[-1]:.2f} < slow {slow[-1]:.2f}",
            )
        if not trending:
            return Signal.hold(current_price, f"ranging (ADX {adx:.1f} < {self.adx_threshold})")
        return Signal.hold(current_price, "waiting for crossover")
