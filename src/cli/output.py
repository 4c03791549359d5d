"""
Human-readable terminal output for replays and running bots.

Every CLI command uses these formatters. The journal receives the same data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from trade_core.metrics import PROFIT_FACTOR_CAP, TradeStatistics

if TYPE_CHECKING:
    from backtest.simulator import SimulationResult
    from trade_core.engine import EngineStats


def _fmt_pf(pf: float) -> str:
    return "inf" if pf >= PROFIT_FACTOR_CAP else f"{pf:.2f}"


def format_statistics(stats: TradeStatistics) -> list[str]:
    return [
        f"Trades       : {stats.total_trades} (W:{stats.wins} / L:{stats.losses})",
        f"Win rate     : {stats.win_rate:.1f}%",
        f"Profit factor: {_fmt_pf(stats.profit_factor)}",
        f"Avg win/loss : {stats.avg_win_pct:+.2f}% / {stats.avg_loss_pct:+.2f}%",
        f"Largest      : {stats.largest_win:+.2f} / {stats.largest_loss:+.2f}",
        f"Fees paid    : ${stats.total_fees:,.2f}",
    ]


def format_simulation_summary(result: SimulationResult, *, show_trades: bool = False) -> str:
    """Format replay result summary."""
    start = result.start_time.isoformat() if result.start_time else "-"
    end = result.end_time.isoformat() if result.end_time else "-"
    lines = [
        f"=== Backtest: {result.symbol} {result.timeframe} ===",
        f"Period       : {start} -> {end}",
        f"Bars         : {result.bars_evaluated} evaluated",
        f"Initial cap. : ${result.initial_capital:,.2f}",
        f"Final cap.   : ${result.final_capital:,.2f}",
        f"Return       : {result.total_pnl:+,.2f} ({result.total_pnl_pct:+.2f}%)",
        f"Max drawdown : ${result.max_drawdown:,.2f} ({result.max_drawdown_pct:.2f}%)",
        f"Avg holding  : {result.avg_holding_minutes:.1f} min",
    ]
    lines.extend(format_statistics(result.statistics))
    if result.emergency_stopped:
        lines.append("EMERGENCY STOP: drawdown limit reached, replay halted")
    if show_trades and result.trades:
        lines.append("")
        for i, t in enumerate(result.trades, 1):
            lines.append(f"  Trade #{i}: entry {t.entry_price:.2f} @ {t.opened_at.isoformat()}")
            lines.append(f"            exit  {t.exit_price:.2f} @ {t.closed_at.isoformat()} | net ${t.net_profit:+.2f} ({t.profit_pct:+.2f}%)")
            lines.append(f"            Reason: {t.reason}")
    lines.append("===")
    return "\n".join(lines)


def format_engine_stats(stats: EngineStats) -> str:
    """One block per bot: state, capital, position, performance."""
    mode = stats.mode.value if stats.mode is not None else "-"
    lines = [
        f"--- {stats.name} ({stats.symbol}) ---",
        f"State        : {stats.state.value} [{mode}]",
        f"Budget       : ${stats.allocated_budget:,.2f} available, baseline ${stats.real_baseline:,.2f}",
        f"Total value  : ${stats.total_value:,.2f}  drawdown {stats.drawdown_pct:.2f}%",
    ]
    pos = stats.position
    if pos is not None:
        flags = []
        if pos.recovered:
            flags.append("recovered")
        if pos.unprotected:
            flags.append("UNPROTECTED")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(
            f"Position     : {pos.amount:.8f} @ {pos.entry_price:.2f}  uPnL {pos.unrealized_pnl:+.2f}{suffix}"
        )
        if pos.stop_loss is not None or pos.take_profit is not None:
            sl = f"{pos.stop_loss:.2f}" if pos.stop_loss is not None else "-"
            tp = f"{pos.take_profit:.2f}" if pos.take_profit is not None else "-"
            lines.append(f"SL / TP      : {sl} / {tp}")
    else:
        lines.append("Position     : flat")
    lines.append(
        f"Trades       : {stats.total_trades}  win rate {stats.win_rate:.1f}%  PF {_fmt_pf(stats.profit_factor)}"
    )
    lines.append(f"Net P&L      : {stats.total_pnl:+,.2f}  (today {stats.daily_pnl:+,.2f}, {stats.daily_trades} entries)")
    lines.append(f"Avg slippage : {stats.average_slippage * 100:.3f}%")
    if stats.emergency_reason:
        lines.append(f"EMERGENCY    : {stats.emergency_reason}")
    return "\n".join(lines)


def format_all_stats(all_stats: Iterable[EngineStats]) -> str:
    blocks = [format_engine_stats(s) for s in all_stats]
    return "\n\n".join(blocks) if blocks else "No bots running."
