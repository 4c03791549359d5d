"""Pytest fixtures: candle series, simulated exchange and engine wiring for deterministic tests."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from execution.simulated import SimulatedExchange
from trade_core.contracts import Candle
from trade_core.engine import ExecutionEngine
from trade_core.ledger import PositionLedger
from trade_core.risk_controller import RiskController

T0 = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)


def _ts(minute: int) -> datetime:
    return T0 + timedelta(minutes=minute)


def make_candles(closes: list[float], *, volume: float = 10.0, start: int = 0) -> list[Candle]:
    """One-minute candles with the given closes; open = previous close."""
    out: list[Candle] = []
    prev = closes[0]
    for i, close in enumerate(closes):
        out.append(Candle(
            timestamp=_ts(start + i),
            open=prev,
            high=max(prev, close) * 1.001,
            low=min(prev, close) * 0.999,
            close=close,
            volume=volume,
        ))
        prev = close
    return out


class FixedClock:
    """Controllable clock for engine tests."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


async def no_sleep(_: float) -> None:
    return None


def build_engine(
    port: SimulatedExchange,
    *,
    budget: float = 1_000.0,
    capital_mode: str = "isolated",
    max_drawdown: float = 0.15,
    position_fraction: float = 0.5,
    fee_rate: float = 0.001,
    clock: FixedClock | None = None,
    **kwargs,
) -> ExecutionEngine:
    return ExecutionEngine(
        "test",
        port,
        ledger=PositionLedger(fee_rate),
        risk=RiskController(budget, max_drawdown=max_drawdown, capital_mode=capital_mode),
        position_fraction=position_fraction,
        fill_wait_s=0.0,
        clock=clock or FixedClock(),
        sleep=no_sleep,
        **kwargs,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def exchange() -> SimulatedExchange:
    return SimulatedExchange("BTC/USDT", quote_balance=10_000.0, price=100.0, fee_rate=0.001)


@pytest.fixture
def flat_candles() -> list[Candle]:
    return make_candles([100.0] * 50)


@pytest.fixture
def wave_candles() -> list[Candle]:
    """Slow sine wave around 100 with a 60-bar period; enough swings for both strategies."""
    closes = [100.0 + 8.0 * math.sin(2 * math.pi * i / 60) for i in range(600)]
    return make_candles(closes)


@pytest.fixture
def uptrend_candles() -> list[Candle]:
    return make_candles([100.0 + i * 0.5 for i in range(60)])
