"""
Aggregate statistics over closed trades.

Profit factor is computed exactly from per-trade net profits. When there
are no losing trades it is PROFIT_FACTOR_CAP if anything was won, else 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from trade_core.contracts import TradeRecord

PROFIT_FACTOR_CAP = 999.0


@dataclass(frozen=True)
class TradeStatistics:
    total_trades: int
    wins: int
    losses: int
    win_rate: float  # percent
    profit_factor: float
    avg_win_pct: float
    avg_loss_pct: float
    largest_win: float
    largest_loss: float
    gross_wins: float
    gross_losses: float  # absolute value
    total_net_profit: float
    total_fees: float
    max_drawdown: float
    max_drawdown_pct: float


def profit_factor(gross_wins: float, gross_losses: float) -> float:
    """gross wins / |gross losses| with a capped value when nothing was lost."""
    if gross_losses > 0:
        return gross_wins / gross_losses
    return PROFIT_FACTOR_CAP if gross_wins > 0 else 0.0


def equity_drawdown(initial_capital: float, net_profits: Sequence[float]) -> tuple[float, float]:
    """Max peak-to-trough drop of the realized equity curve, as (absolute, percent)."""
    equity = initial_capital
    peak = initial_capital
    max_dd = 0.0
    max_dd_pct = 0.0
    for pnl in net_profits:
        equity += pnl
        if equity > peak:
            peak = equity
        dd = peak - equity
        if dd > max_dd:
            max_dd = dd
            max_dd_pct = dd / peak * 100 if peak > 0 else 0.0
    return max_dd, max_dd_pct


def compute_statistics(trades: Sequence[TradeRecord], initial_capital: float) -> TradeStatistics:
    """Summarize *trades* in close order against a starting capital."""
    winners = [t for t in trades if t.win]
    losers = [t for t in trades if not t.win]
    gross_wins = sum(t.net_profit for t in winners)
    gross_losses = abs(sum(t.net_profit for t in losers))
    total = len(trades)
    max_dd, max_dd_pct = equity_drawdown(initial_capital, [t.net_profit for t in trades])

    return TradeStatistics(
        total_trades=total,
        wins=len(winners),
        losses=len(losers),
        win_rate=len(winners) / total * 100 if total else 0.0,
        profit_factor=profit_factor(gross_wins, gross_losses),
        avg_win_pct=sum(t.profit_pct for t in winners) / len(winners) if winners else 0.0,
        avg_loss_pct=sum(t.profit_pct for t in losers) / len(losers) if losers else 0.0,
        largest_win=max((t.net_profit for t in winners), default=0.0),
        largest_loss=min((t.net_profit for t in losers), default=0.0),
        gross_wins=gross_wins,
        gross_losses=gross_losses,
        total_net_profit=sum(t.net_profit for t in trades),
        total_fees=sum(t.fees for t in trades),
        max_drawdown=max_dd,
        max_drawdown_pct=max_dd_pct,
    )
