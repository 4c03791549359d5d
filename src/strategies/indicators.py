"""
Indicator helpers for the reference strategies.

Each function takes an ordered history (oldest first) and returns the value
for the most recent element, or None while the window is not yet full.
ema_series keeps the whole series because crossovers need the prior value.

Pure functions; no I/O.
"""

from __future__ import annotations

import math
from typing import Sequence

from trade_core.contracts import Candle


def closes(candles: Sequence[Candle]) -> list[float]:
    return [c.close for c in candles]


def sma(values: Sequence[float], period: int) -> float | None:
    if period <= 0 or len(values) < period:
        return None
    return sum(values[-period:]) / period


def ema_series(values: Sequence[float], period: int) -> list[float | None]:
    """EMA seeded with the SMA of the first *period* values."""
    out: list[float | None] = [None] * len(values)
    if period <= 0 or len(values) < period:
        return out
    k = 2 / (period + 1)
    prev = sum(values[:period]) / period
    out[period - 1] = prev
    for i in range(period, len(values)):
        prev = (values[i] - prev) * k + prev
        out[i] = prev
    return out


def ema(values: Sequence[float], period: int) -> float | None:
    series = ema_series(values, period)
    return series[-1] if series else None


def rsi(values: Sequence[float], period: int = 14) -> float | None:
    """RSI from simple average gains/losses over the last *period* changes."""
    if len(values) < period + 1:
        return None
    gains = 0.0
    losses = 0.0
    for i in range(len(values) - period, len(values)):
        change = values[i] - values[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    if losses == 0:
        return 100.0
    rs = (gains / period) / (losses / period)
    return 100 - 100 / (1 + rs)


def bollinger(values: Sequence[float], period: int = 20, num_std: float = 2.0) -> tuple[float, float, float] | None:
    """Return (lower, middle, upper) using population standard deviation."""
    middle = sma(values, period)
    if middle is None:
        return None
    window = values[-period:]
    std = math.sqrt(sum((v - middle) ** 2 for v in window) / period)
    return middle - num_std * std, middle, middle + num_std * std


def true_range(current: Candle, prev_close: float) -> float:
    return max(
        current.high - current.low,
        abs(current.high - prev_close),
        abs(current.low - prev_close),
    )


def atr(candles: Sequence[Candle], period: int = 14) -> float | None:
    """Simple average of the last *period* true ranges."""
    if len(candles) < period + 1:
        return None
    trs = [true_range(candles[i], candles[i - 1].close) for i in range(len(candles) - period, len(candles))]
    return sum(trs) / period


def adx(candles: Sequence[Candle], period: int = 14) -> float | None:
    """Directional index (DX) over the last *period* bars, 0-100."""
    if len(candles) < period + 1:
        return None
    plus_dm = 0.0
    minus_dm = 0.0
    tr_sum = 0.0
    for i in range(len(candles) - period, len(candles)):
        cur, prev = candles[i], candles[i - 1]
        up = cur.high - prev.high
        down = prev.low - cur.low
        if up > down and up > 0:
            plus_dm += up
        if down > up and down > 0:
            minus_dm += down
        tr_sum += true_range(cur, prev.close)
    if tr_sum <= 0:
        return 0.0
    plus_di = plus_dm / tr_sum * 100
    minus_di = minus_dm / tr_sum * 100
    if plus_di + minus_di == 0:
        return 0.0
    return abs(plus_di - minus_di) / (plus_di + minus_di) * 100


def volume_ratio(candles: Sequence[Candle], period: int = 20) -> float | None:
    """Last volume divided by the average of the *period* volumes before it."""
    if len(candles) < period + 1:
        return None
    avg = sum(c.volume for c in candles[-period - 1:-1]) / period
    if avg <= 0:
        return None
    return candles[-1].volume / avg
