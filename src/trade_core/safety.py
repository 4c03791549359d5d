"""
Safety guard: kill switch, max daily loss and max entries per day.

Checked before every entry order. Exits are never blocked by it; the
drawdown limit in the risk controller is the fatal path.

- kill_switch: disables all new entries.
- max_daily_loss_pct: halts entries when realized daily loss exceeds the
  threshold. Resets automatically at the start of each UTC day.
- max_trades_per_day: caps the number of entries per day (0 = unlimited).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class SafetyResult:
    allowed: bool
    reason: str = ""


class SafetyGuard:
    """Pre-entry safety checks.

    Parameters
    ----------
    kill_switch:
        If True, all entries are blocked unconditionally.
    max_daily_loss_pct:
        Maximum allowed daily realized loss as percentage of budget.
    budget:
        Capital the percentage is taken from.
    max_trades_per_day:
        Maximum entries per day; 0 disables the cap.
    """

    def __init__(
        self,
        *,
        kill_switch: bool = False,
        max_daily_loss_pct: float = 3.0,
        budget: float = 1_000.0,
        max_trades_per_day: int = 0,
    ) -> None:
        self._kill_switch = kill_switch
        self._max_daily_loss_pct = max_daily_loss_pct
        self._budget = budget
        self._max_trades_per_day = max_trades_per_day
        self._daily_pnl: float = 0.0
        self._daily_trades: int = 0
        self._trading_date: date | None = None

    @property
    def kill_switch(self) -> bool:
        return self._kill_switch

    @property
    def daily_pnl(self) -> float:
        return self._daily_pnl

    @property
    def daily_trades(self) -> int:
        return self._daily_trades

    @property
    def max_trades_per_day(self) -> int:
        return self._max_trades_per_day

    @property
    def max_daily_loss(self) -> float:
        return self._budget * (self._max_daily_loss_pct / 100.0)

    def _reset_if_new_day(self, today: date) -> None:
        if self._trading_date != today:
            self._daily_pnl = 0.0
            self._daily_trades = 0
            self._trading_date = today

    def record_entry(self, today: date | None = None) -> None:
        self._reset_if_new_day(today or _today())
        self._daily_trades += 1

    def record_pnl(self, pnl: float, today: date | None = None) -> None:
        """Record realized PnL from a closed trade."""
        self._reset_if_new_day(today or _today())
        self._daily_pnl += pnl

    def check(self, today: date | None = None) -> SafetyResult:
        """Return allowed=False with a reason when a new entry is not permitted."""
        if self._kill_switch:
            return SafetyResult(allowed=False, reason="Kill switch is ON, entries disabled")

        self._reset_if_new_day(today or _today())

        loss_limit = self.max_daily_loss
        if self._daily_pnl < 0 and abs(self._daily_pnl) >= loss_limit:
            return SafetyResult(
                allowed=False,
                reason=f"Daily loss limit breached: {self._daily_pnl:.2f} "
                       f"(limit: -{loss_limit:.2f}, {self._max_daily_loss_pct}%)",
            )

        if self._max_trades_per_day and self._daily_trades >= self._max_trades_per_day:
            return SafetyResult(
                allowed=False,
                reason=f"Daily trade limit reached: {self._daily_trades}/{self._max_trades_per_day}",
            )

        return SafetyResult(allowed=True)
