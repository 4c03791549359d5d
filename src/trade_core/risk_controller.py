"""
Risk controller: real capital baseline, drawdown, emergency stop.

State machine: STARTING -> ACTIVE (baseline established) -> EMERGENCY_STOPPED
(drawdown >= limit). EMERGENCY_STOPPED is terminal for the instance; a new
engine has to be constructed to trade again.

Two numbers are tracked and never conflated:

- allocated budget: cash this engine may size entries against.
- real baseline: the capital drawdown is measured from. In isolated mode
  it is the allocated budget and value comes only from this engine's own
  fills. In exclusive mode it is the whole account value observed at start,
  and value is the tracked quote balance plus the open position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from trade_core.contracts import CapitalMode, RiskState

logger = logging.getLogger("trader.risk")

DEFAULT_MAX_DRAWDOWN = 0.15
DEFAULT_ISOLATION_THRESHOLD = 0.5
DEFAULT_BALANCE_CHECK_INTERVAL_S = 600.0
DEFAULT_BALANCE_EPSILON = 0.01


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CapitalBaseline:
    allocated_budget: float
    real_baseline: float
    expected_balance: float


@dataclass(frozen=True)
class RiskSnapshot:
    state: RiskState
    mode: CapitalMode | None
    allocated_budget: float
    real_baseline: float
    expected_balance: float
    last_drawdown: float
    max_drawdown_seen: float
    emergency_reason: str
    last_balance_check: datetime | None
    balance_discrepancy: float


def resolve_mode(
    configured: CapitalMode | str | None,
    budget: float,
    account_value: float,
    isolation_threshold: float = DEFAULT_ISOLATION_THRESHOLD,
) -> CapitalMode:
    """Pick the capital mode. An explicit mode wins; "auto" applies the ratio heuristic."""
    if configured not in (None, "auto"):
        return CapitalMode(configured)
    if account_value > 0 and budget < isolation_threshold * account_value:
        return CapitalMode.ISOLATED
    return CapitalMode.EXCLUSIVE


class RiskController:
    """Drawdown gate and balance verification for one engine instance.

    Parameters
    ----------
    budget:
        Allocated budget in quote currency.
    max_drawdown:
        Fractional loss from the real baseline that trips the emergency stop.
    capital_mode:
        "isolated", "exclusive" or "auto" (decide from budget vs account value).
    isolation_threshold:
        Under "auto", budget below this fraction of account value means isolated.
    balance_check_interval_s:
        Seconds between exclusive-mode balance verifications.
    balance_epsilon:
        Absolute quote difference tolerated before re-anchoring.
    """

    def __init__(
        self,
        budget: float,
        *,
        max_drawdown: float = DEFAULT_MAX_DRAWDOWN,
        capital_mode: CapitalMode | str | None = "auto",
        isolation_threshold: float = DEFAULT_ISOLATION_THRESHOLD,
        balance_check_interval_s: float = DEFAULT_BALANCE_CHECK_INTERVAL_S,
        balance_epsilon: float = DEFAULT_BALANCE_EPSILON,
    ) -> None:
        if budget <= 0:
            raise ValueError(f"budget must be positive, got {budget}")
        if not 0 < max_drawdown <= 1:
            raise ValueError(f"max_drawdown must be in (0, 1], got {max_drawdown}")
        self._budget = budget
        self._max_drawdown = max_drawdown
        self._configured_mode = capital_mode
        self._isolation_threshold = isolation_threshold
        self._check_interval = timedelta(seconds=balance_check_interval_s)
        self._epsilon = balance_epsilon

        self._state = RiskState.STARTING
        self._mode: CapitalMode | None = None
        self._capital = CapitalBaseline(budget, budget, budget)
        self._last_drawdown = 0.0
        self._max_drawdown_seen = 0.0
        self._emergency_reason = ""
        self._last_balance_check: datetime | None = None
        self._balance_discrepancy = 0.0

    # -- properties ---------------------------------------------------------

    @property
    def state(self) -> RiskState:
        return self._state

    @property
    def mode(self) -> CapitalMode | None:
        return self._mode

    @property
    def is_stopped(self) -> bool:
        return self._state is RiskState.EMERGENCY_STOPPED

    @property
    def max_drawdown(self) -> float:
        return self._max_drawdown

    @property
    def allocated_budget(self) -> float:
        return self._capital.allocated_budget

    @property
    def real_baseline(self) -> float:
        return self._capital.real_baseline

    @property
    def expected_balance(self) -> float:
        return self._capital.expected_balance

    @property
    def emergency_reason(self) -> str:
        return self._emergency_reason

    # -- lifecycle ----------------------------------------------------------

    def establish_baseline(
        self,
        account_value: float,
        quote_balance: float,
        *,
        now: datetime | None = None,
    ) -> CapitalMode:
        """Fix the real baseline and move STARTING -> ACTIVE.

        *account_value* is quote plus base holdings valued at the current
        price; *quote_balance* is the total quote currency held. Calling it
        again after the first time returns the already-chosen mode.
        """
        if self._state is not RiskState.STARTING:
            return self._mode  # type: ignore[return-value]

        mode = resolve_mode(self._configured_mode, self._budget, account_value, self._isolation_threshold)
        if mode is CapitalMode.ISOLATED:
            self._capital = CapitalBaseline(self._budget, self._budget, self._budget)
        else:
            if account_value <= 0:
                raise ValueError("exclusive mode needs a positive account value")
            self._capital = CapitalBaseline(self._budget, account_value, quote_balance)
            self._last_balance_check = now or _now()
            if quote_balance < self._budget:
                logger.warning(
                    "Quote balance %.2f is below the allocated budget %.2f", quote_balance, self._budget,
                )

        self._mode = mode
        self._state = RiskState.ACTIVE
        logger.info(
            "Baseline established: mode=%s baseline=%.2f allocated=%.2f account=%.2f",
            mode.value, self._capital.real_baseline, self._capital.allocated_budget, account_value,
        )
        return mode

    def on_entry(self, cost: float) -> None:
        """Debit an entry's notional plus fee."""
        self._capital.allocated_budget -= cost
        self._capital.expected_balance -= cost

    def on_exit(self, proceeds: float) -> None:
        """Credit an exit's notional minus fee."""
        self._capital.allocated_budget += proceeds
        self._capital.expected_balance += proceeds

    def on_recovered(self, notional: float) -> None:
        """Reserve budget for a position recovered at startup.

        The quote balance already reflects the holding, so only the sizing
        budget changes.
        """
        self._capital.allocated_budget = max(0.0, self._capital.allocated_budget - notional)

    # -- drawdown -----------------------------------------------------------

    def total_value(self, position_value: float = 0.0) -> float:
        if self._mode is CapitalMode.EXCLUSIVE:
            return self._capital.expected_balance + position_value
        return self._capital.allocated_budget + position_value

    def drawdown(self, position_value: float = 0.0) -> float:
        """Fractional loss of total value below the real baseline (0 when at or above it)."""
        baseline = self._capital.real_baseline
        if baseline <= 0:
            return 0.0
        return max(0.0, baseline - self.total_value(position_value)) / baseline

    def check_drawdown(self, position_value: float = 0.0) -> bool:
        """Return True when trading must stop.

        Trips STARTING/ACTIVE -> EMERGENCY_STOPPED when drawdown reaches the
        limit. Once stopped, always returns True.
        """
        if self._state is RiskState.EMERGENCY_STOPPED:
            return True
        if self._state is RiskState.STARTING:
            return False

        dd = self.drawdown(position_value)
        self._last_drawdown = dd
        self._max_drawdown_seen = max(self._max_drawdown_seen, dd)
        if dd >= self._max_drawdown:
            self.trip(
                f"max drawdown exceeded: {dd * 100:.2f}% >= {self._max_drawdown * 100:.2f}% "
                f"(value {self.total_value(position_value):.2f} vs baseline {self._capital.real_baseline:.2f})"
            )
            return True
        return False

    def trip(self, reason: str) -> None:
        """Force EMERGENCY_STOPPED. No transition leaves this state."""
        if self._state is RiskState.EMERGENCY_STOPPED:
            return
        self._state = RiskState.EMERGENCY_STOPPED
        self._emergency_reason = reason
        logger.critical("EMERGENCY STOP: %s", reason)

    # -- balance verification -----------------------------------------------

    def balance_check_due(self, now: datetime | None = None) -> bool:
        if self._mode is not CapitalMode.EXCLUSIVE or self._state is not RiskState.ACTIVE:
            return False
        if self._last_balance_check is None:
            return True
        return (now or _now()) - self._last_balance_check >= self._check_interval

    def verify_balance(self, observed_quote: float, *, now: datetime | None = None) -> float | None:
        """Compare tracked vs observed quote balance (exclusive mode only).

        On a mismatch beyond epsilon, log a warning and re-anchor the
        tracked value. Returns the discrepancy (observed - expected) when a
        re-anchor happened, else None.
        """
        if self._mode is not CapitalMode.EXCLUSIVE:
            return None
        self._last_balance_check = now or _now()
        discrepancy = observed_quote - self._capital.expected_balance
        if abs(discrepancy) <= self._epsilon:
            self._balance_discrepancy = 0.0
            return None
        logger.warning(
            "Balance mismatch: expected %.4f, observed %.4f (diff %+.4f); re-anchoring",
            self._capital.expected_balance, observed_quote, discrepancy,
        )
        self._balance_discrepancy = discrepancy
        self._capital.expected_balance = observed_quote
        return discrepancy

    def snapshot(self) -> RiskSnapshot:
        return RiskSnapshot(
            state=self._state,
            mode=self._mode,
            allocated_budget=self._capital.allocated_budget,
            real_baseline=self._capital.real_baseline,
            expected_balance=self._capital.expected_balance,
            last_drawdown=self._last_drawdown,
            max_drawdown_seen=self._max_drawdown_seen,
            emergency_reason=self._emergency_reason,
            last_balance_check=self._last_balance_check,
            balance_discrepancy=self._balance_discrepancy,
        )
