"""
Mean reversion: buy oversold touches of the lower Bollinger band, exit at
the upper band.

Keeps a belief of whether it is in a position so it only offers an exit
opinion after an entry (or after restore_position at startup).
"""

from __future__ import annotations

from typing import Sequence

from strategies import indicators as ind
from trade_core.contracts import Candle, Signal, SignalAction


class MeanReversionStrategy:
    """Bollinger lower-band touch with oversold RSI; exits at the upper band or SL/TP."""

    name = "mean_reversion"

    def __init__(
        self,
        *,
        bb_period: int = 20,
        bb_std: float = 2.0,
        rsi_period: int = 14,
        oversold: float = 30.0,
        overbought: float = 70.0,
        band_tolerance: float = 0.005,
        stop_loss_pct: float = 2.0,
        take_profit_pct: float = 5.0,
    ) -> None:
        self.bb_period = bb_period
        self.bb_std = bb_std
        self.rsi_period = rsi_period
        self.oversold = oversold
        self.overbought = overbought
        self.band_tolerance = band_tolerance
        self.stop_loss_pct = stop_loss_pct
        self.take_profit_pct = take_profit_pct
        self.in_position = False
        self.entry_price: float | None = None

    @property
    def required_candles(self) -> int:
        return max(self.bb_period, self.rsi_period + 1)

    def restore_position(self, entry_price: float, current_price: float) -> None:
        self.in_position = True
        self.entry_price = entry_price

    def clear_position(self) -> None:
        self.in_position = False
        self.entry_price = None

    def analyze(self, candles: Sequence[Candle], current_price: float) -> Signal:
        if len(candles) < self.required_candles:
            return Signal.hold(current_price, "insufficient data")

        values = ind.closes(candles)
        bands = ind.bollinger(values, self.bb_period, self.bb_std)
        rsi = ind.rsi(values, self.rsi_period)
        if bands is None or rsi is None:
            return Signal.hold(current_price, "indicators not ready")
        lower, _, upper = bands

        if self.in_position:
            reason = ""
            if current_price >= upper * (1 - self.band_tolerance) and rsi > self.overbought:
                reason = f"upper band reached ({upper:.2f}), RSI {rsi:.1f}"
            elif self.entry_price is not None:
                change_pct = (current_price - self.entry_price) / self.entry_price * 100
                if change_pct <= -self.stop_loss_pct:
                    reason = f"stop loss {change_pct:.2f}%"
                elif change_pct >= self.take_profit_pct:
                    reason = f"take profit +{change_pct:.2f}%"
            if reason:
                self.in_position = False
                self.entry_price = None
                return Signal(SignalAction.CLOSE, current_price, reason)
            return Signal.hold(current_price, f"in position, RSI {rsi:.1f}")

        if current_price <= lower * (1 + self.band_tolerance) and rsi < self.oversold:
            self.in_position = True
            self.entry_price = current_price
            return Signal(
                SignalAction.BUY,
                current_price,
                f"lower band touch ({lower:.2f}), RSI {rsi:.1f}",
                stop_loss=current_price * (1 - self.stop_loss_pct / 100),
                take_profit=current_price * (1 + self.take_profit_pct / 100),
            )
        return Signal.hold(current_price, f"no setup (RSI {rsi:.1f}, lower band {lower:.2f})")
