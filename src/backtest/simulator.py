"""
Historical simulator: replay the position lifecycle over ordered candles.

Same ledger, fee and risk logic as the live engine, minus exchange concerns
(no reconciliation, no resident orders). Bar-close evaluation; the strategy
sees the candles before the current bar and the current close as price.

Deterministic: every timestamp comes from the candles, so two runs over the
same series with the same strategy produce identical trades and statistics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from strategies.base import SignalSource
from trade_core.contracts import Candle, CapitalMode, SignalAction, TradeRecord
from trade_core.ledger import PositionLedger
from trade_core.metrics import TradeStatistics, compute_statistics
from trade_core.risk_controller import RiskController

logger = logging.getLogger("trader.backtest")

DEFAULT_POSITION_FRACTION = 0.15
DEFAULT_SLIPPAGE_RATE = 0.001
DEFAULT_WARMUP = 200

REASON_END_OF_DATA = "end of data"
REASON_STOP_LOSS = "stop loss"
REASON_TAKE_PROFIT = "take profit"
REASON_DRAWDOWN = "max drawdown exceeded"


@dataclass
class SimulationResult:
    """Result of one replay."""

    symbol: str
    timeframe: str
    start_time: datetime | None
    end_time: datetime | None
    initial_capital: float
    final_capital: float
    statistics: TradeStatistics
    trades: list[TradeRecord] = field(default_factory=list)
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    bars_evaluated: int = 0
    emergency_stopped: bool = False

    @property
    def total_pnl(self) -> float:
        return self.final_capital - self.initial_capital

    @property
    def total_pnl_pct(self) -> float:
        if self.initial_capital <= 0:
            return 0.0
        return self.total_pnl / self.initial_capital * 100

    @property
    def total_trades(self) -> int:
        return len(self.trades)

    @property
    def avg_holding_minutes(self) -> float:
        if not self.trades:
            return 0.0
        return sum(t.holding_minutes for t in self.trades) / len(self.trades)


def validate_series(candles: Sequence[Candle]) -> int:
    """Raise ValueError unless timestamps strictly increase. Returns the number of gaps.

    A gap is a step larger than 1.5x the smallest step in the series.
    """
    if len(candles) < 2:
        return 0
    steps = []
    for prev, cur in zip(candles, candles[1:]):
        step = (cur.timestamp - prev.timestamp).total_seconds()
        if step <= 0:
            raise ValueError(
                f"candles must be strictly increasing: {prev.timestamp.isoformat()} -> {cur.timestamp.isoformat()}"
            )
        steps.append(step)
    base = min(steps)
    gaps = sum(1 for s in steps if s > base * 1.5)
    if gaps:
        logger.warning("Candle series has %d gap(s) wider than %.0fs", gaps, base)
    return gaps


class _Book:
    """Ledger plus isolated-mode risk controller for one replay."""

    def __init__(
        self,
        initial_capital: float,
        fee_rate: float,
        slippage_rate: float,
        max_drawdown: float | None,
    ) -> None:
        self.ledger = PositionLedger(fee_rate)
        self.risk = RiskController(
            initial_capital,
            max_drawdown=max_drawdown if max_drawdown is not None else 1.0,
            capital_mode=CapitalMode.ISOLATED,
        )
        self.risk.establish_baseline(initial_capital, initial_capital)
        self.slippage_rate = slippage_rate
        self.peak = initial_capital
        self.max_dd = 0.0
        self.max_dd_pct = 0.0

    @property
    def capital(self) -> float:
        return self.risk.allocated_budget

    def open(self, candle: Candle, value: float, stop_loss: float | None, take_profit: float | None) -> bool:
        fill = candle.close * (1 + self.slippage_rate)
        amount = value / (fill * (1 + self.ledger.fee_rate))
        if amount <= 0:
            return False
        self.ledger.open(
            fill, amount, stop_loss, take_profit,
            expected_price=candle.close, opened_at=candle.timestamp,
        )
        self.risk.on_entry(fill * amount + self.ledger.fee(fill, amount))
        return True

    def close(self, candle: Candle, reason: str) -> TradeRecord:
        fill = candle.close * (1 - self.slippage_rate)
        trade = self.ledger.close(fill, reason, expected_price=candle.close, closed_at=candle.timestamp)
        self.risk.on_exit(fill * trade.amount - trade.exit_fee)
        capital = self.capital
        if capital > self.peak:
            self.peak = capital
        dd = self.peak - capital
        if dd > self.max_dd:
            self.max_dd = dd
            self.max_dd_pct = dd / self.peak * 100 if self.peak > 0 else 0.0
        return trade


def run_simulation(
    candles: Sequence[Candle],
    strategy: SignalSource,
    *,
    symbol: str = "",
    timeframe: str = "",
    initial_capital: float = 10_000.0,
    fee_rate: float = 0.001,
    position_fraction: float = DEFAULT_POSITION_FRACTION,
    slippage_rate: float = DEFAULT_SLIPPAGE_RATE,
    warmup: int = DEFAULT_WARMUP,
    max_drawdown: float | None = None,
    on_trade: Callable[[TradeRecord], None] | None = None,
) -> SimulationResult:
    """Replay *candles* through *strategy* and return aggregate results.

    Parameters
    ----------
    candles:
        Chronological candles for one pair (strictly increasing timestamps).
    strategy:
        Signal source; asked for an entry opinion when flat and an exit
        opinion when in a position.
    initial_capital:
        Starting simulated capital.
    fee_rate:
        Fee per side as a fraction of notional.
    position_fraction:
        Share of currently available capital committed per entry (no leverage).
    slippage_rate:
        Entry fills at close * (1 + rate), exits at close * (1 - rate).
    warmup:
        Bars skipped before trading; also the history length passed to the strategy.
    max_drawdown:
        Optional drawdown limit; when reached the open position is liquidated
        and the replay stops trading.
    on_trade:
        Optional callback for every closed trade (journaling).
    """
    if not 0 < position_fraction <= 1:
        raise ValueError(f"position_fraction must be in (0, 1], got {position_fraction}")
    validate_series(candles)

    book = _Book(initial_capital, fee_rate, slippage_rate, max_drawdown)
    trades: list[TradeRecord] = []
    emergency = False
    evaluated = 0

    def _close(candle: Candle, reason: str) -> None:
        trade = book.close(candle, reason)
        trades.append(trade)
        strategy.clear_position()
        if on_trade is not None:
            on_trade(trade)

    for i in range(warmup, len(candles)):
        candle = candles[i]
        price = candle.close
        history = candles[max(0, i - warmup):i]
        evaluated += 1
        pos = book.ledger.mark_to_market(price)

        if max_drawdown is not None:
            position_value = pos.market_value if pos is not None else 0.0
            if book.risk.check_drawdown(position_value):
                if pos is not None:
                    _close(candle, REASON_DRAWDOWN)
                emergency = True
                logger.warning("Replay halted at %s: %s", candle.timestamp.isoformat(), book.risk.emergency_reason)
                break

        if pos is not None:
            signal = strategy.analyze(history, price)
            if pos.stop_loss is not None and price <= pos.stop_loss:
                _close(candle, REASON_STOP_LOSS)
            elif pos.take_profit is not None and price >= pos.take_profit:
                _close(candle, REASON_TAKE_PROFIT)
            elif signal.action in (SignalAction.SELL, SignalAction.CLOSE):
                _close(candle, signal.reason or signal.action.value)
        else:
            signal = strategy.analyze(history, price)
            if signal.action is SignalAction.BUY:
                if not book.open(candle, book.capital * position_fraction, signal.stop_loss, signal.take_profit):
                    strategy.clear_position()

    if book.ledger.position is not None and candles:
        _close(candles[-1], REASON_END_OF_DATA)

    result = SimulationResult(
        symbol=symbol,
        timeframe=timeframe,
        start_time=candles[0].timestamp if candles else None,
        end_time=candles[-1].timestamp if candles else None,
        initial_capital=initial_capital,
        final_capital=book.capital,
        statistics=compute_statistics(trades, initial_capital),
        trades=trades,
        max_drawdown=book.max_dd,
        max_drawdown_pct=book.max_dd_pct,
        bars_evaluated=evaluated,
        emergency_stopped=emergency,
    )
    logger.info(
        "Replay %s %s: %d bars, %d trades, P&L %+.2f%%",
        symbol, timeframe, evaluated, len(trades), result.total_pnl_pct,
    )
    return result
