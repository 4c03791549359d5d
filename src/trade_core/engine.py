"""
Execution engine: drives one position lifecycle per signal.

signal -> drawdown gate -> market order -> fill verification -> position
-> protective stop -> exit -> fee/slippage accounting.

Signals are processed one at a time (an asyncio.Lock serializes callers).
Exchange errors are logged and leave state as it was before the failed call;
the engine stays ACTIVE and retries on the next tick. Only a drawdown breach
is fatal: forced liquidation and a permanent EMERGENCY_STOPPED state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from execution.port import ExchangeError, ExecutionPort, OrderNotFoundError, OrderResult
from trade_core.contracts import (
    CapitalMode,
    Order,
    OrderStatus,
    Position,
    RiskState,
    Signal,
    SignalAction,
    TradeRecord,
)
from trade_core.errors import ExecutionAbortedError, TradeCoreError
from trade_core.ledger import PositionLedger
from trade_core.reconciliation import ReconciliationReport, reconcile
from trade_core.risk_controller import RiskController
from trade_core.safety import SafetyGuard
from trade_core.slippage import SlippageTracker

if TYPE_CHECKING:
    from cli.structured_log import StructuredEventLogger
    from journal.writer import JournalWriter

logger = logging.getLogger("trader.engine")

DEFAULT_POSITION_FRACTION = 0.08
DEFAULT_FILL_WAIT_S = 2.0

REASON_DRAWDOWN = "max drawdown exceeded"
REASON_STOP_FILLED = "protective stop filled"
REASON_STOP_LOSS = "stop loss"
REASON_TAKE_PROFIT = "take profit"
REASON_SHUTDOWN = "shutdown"
REASON_DUST = "dust written off"


class TickOutcome(str, Enum):
    """What process_signal did with a signal."""

    OPENED = "opened"
    CLOSED = "closed"
    NOOP = "noop"
    REJECTED = "rejected"
    ABORTED = "aborted"
    ERROR = "error"
    EMERGENCY = "emergency"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class EngineStats:
    name: str
    symbol: str
    state: RiskState
    mode: CapitalMode | None
    allocated_budget: float
    real_baseline: float
    expected_balance: float
    total_value: float
    drawdown_pct: float
    position: Position | None
    total_trades: int
    win_rate: float
    profit_factor: float
    total_pnl: float
    average_slippage: float
    consecutive_losses: int
    daily_pnl: float
    daily_trades: int
    max_trades_per_day: int
    emergency_reason: str
    balance_discrepancy: float
    last_balance_check: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionEngine:
    """One engine instance: one pair, at most one open long position.

    Parameters
    ----------
    name:
        Instance label used in logs and events.
    port:
        Exchange adapter (live or simulated).
    ledger, risk:
        Owned exclusively by this instance.
    safety:
        Optional entry gate (kill switch, daily loss, trades per day).
    slippage:
        Rolling fill-slippage window.
    position_fraction:
        Share of the allocated budget committed per entry.
    fill_wait_s:
        Delay before the single follow-up poll of an unfilled order.
    events, journal:
        Optional structured event logger and JSONL journal.
    """

    def __init__(
        self,
        name: str,
        port: ExecutionPort,
        *,
        ledger: PositionLedger,
        risk: RiskController,
        safety: SafetyGuard | None = None,
        slippage: SlippageTracker | None = None,
        position_fraction: float = DEFAULT_POSITION_FRACTION,
        fill_wait_s: float = DEFAULT_FILL_WAIT_S,
        events: StructuredEventLogger | Any = None,
        journal: JournalWriter | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not 0 < position_fraction <= 1:
            raise ValueError(f"position_fraction must be in (0, 1], got {position_fraction}")
        self.name = name
        self._port = port
        self._ledger = ledger
        self._risk = risk
        self._safety = safety
        self._slippage = slippage or SlippageTracker()
        self._position_fraction = position_fraction
        self._fill_wait_s = fill_wait_s
        self._events = events
        self._journal = journal
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._own_order_ids: set[str] = set()
        self._started = False
        self._shut_down = False
        self._last_price: float | None = None
        self.reconciliation: ReconciliationReport | None = None

    @property
    def ledger(self) -> PositionLedger:
        return self._ledger

    @property
    def risk(self) -> RiskController:
        return self._risk

    @property
    def port(self) -> ExecutionPort:
        return self._port

    @property
    def state(self) -> RiskState:
        return self._risk.state

    @property
    def is_stopped(self) -> bool:
        return self._risk.is_stopped

    @property
    def last_price(self) -> float | None:
        return self._last_price

    def _event(self, method: str, **fields: Any) -> None:
        if self._events is not None:
            getattr(self._events, method)(**fields)

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> CapitalMode:
        """Establish the capital baseline and, in exclusive mode, reconcile.

        A second call is a no-op returning the chosen mode.
        """
        async with self._lock:
            if self._started:
                return self._risk.mode  # type: ignore[return-value]
            await self._port.connect()
            balance = await self._port.fetch_balance()
            ticker = await self._port.fetch_ticker()
            self._last_price = ticker.last
            account_value = balance.quote_total + balance.base_total * ticker.last
            mode = self._risk.establish_baseline(account_value, balance.quote_total, now=self._clock())

            if mode is CapitalMode.EXCLUSIVE:
                self.reconciliation = await reconcile(
                    self._port, self._ledger, self._risk, price=ticker.last, events=self._events,
                )
                if self._ledger.position is not None and self._ledger.position.protective_order_id:
                    self._own_order_ids.add(self._ledger.position.protective_order_id)

            self._started = True
            self._event(
                "engine_started",
                mode=mode.value,
                baseline=self._risk.real_baseline,
                allocated=self._risk.allocated_budget,
                recovered=self._ledger.position is not None,
            )
            logger.info("[%s] started in %s mode on %s", self.name, mode.value, self._port.symbol)
            return mode

    async def shutdown(self, price: float | None = None, reason: str = REASON_SHUTDOWN) -> None:
        """Flat any open position, then cancel resident orders. Failures are logged, not raised."""
        async with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            if self._ledger.position is not None:
                try:
                    if price is None:
                        price = (await self._port.fetch_ticker()).last
                    await self._close(price, reason)
                except (ExchangeError, ExecutionAbortedError) as exc:
                    logger.error("[%s] could not flatten position on shutdown: %s", self.name, exc)
                    self._event("error", message="shutdown liquidation failed", detail=str(exc))

            cancelled = 0
            try:
                open_orders = await self._port.fetch_open_orders()
            except ExchangeError as exc:
                logger.error("[%s] could not list open orders on shutdown: %s", self.name, exc)
                open_orders = []
            exclusive = self._risk.mode is CapitalMode.EXCLUSIVE
            for order in open_orders:
                mine = order.id in self._own_order_ids
                if not (mine or (exclusive and order.is_protective)):
                    continue
                try:
                    await self._port.cancel_order(order.id)
                    cancelled += 1
                except ExchangeError as exc:
                    logger.warning("[%s] could not cancel %s on shutdown: %s", self.name, order.id, exc)

            self._event(
                "shutdown",
                trades=len(self._ledger.trades),
                cancelled_orders=cancelled,
                position_open=self._ledger.position is not None,
            )
            logger.info("[%s] shut down (%d orders cancelled)", self.name, cancelled)

    # -- signal processing --------------------------------------------------

    async def process_signal(self, signal: Signal, price: float | None = None) -> TickOutcome:
        """Act on one signal at *price* (defaults to the signal's price)."""
        async with self._lock:
            if not self._started:
                raise TradeCoreError(f"engine {self.name} has not been started")
            if self._shut_down:
                return TickOutcome.DISCARDED
            return await self._process(signal, price if price is not None else signal.price)

    async def _process(self, signal: Signal, price: float) -> TickOutcome:
        if price <= 0:
            logger.warning("[%s] ignoring signal with non-positive price %s", self.name, price)
            return TickOutcome.DISCARDED
        self._last_price = price
        self._ledger.mark_to_market(price)

        if self._risk.is_stopped:
            if self._ledger.position is not None:
                await self._liquidate(price, self._risk.emergency_reason or REASON_DRAWDOWN)
            return TickOutcome.DISCARDED

        if await self._enforce_drawdown(price):
            return TickOutcome.EMERGENCY

        try:
            if signal.action is SignalAction.BUY:
                outcome = await self._open(signal, price)
            elif signal.action in (SignalAction.SELL, SignalAction.CLOSE):
                if self._ledger.position is None:
                    outcome = TickOutcome.NOOP
                else:
                    await self._close(price, signal.reason or signal.action.value)
                    outcome = TickOutcome.CLOSED
            else:
                outcome = TickOutcome.NOOP

            if await self._backstop(price):
                outcome = TickOutcome.CLOSED
            await self._verify_balance()
        except ExecutionAbortedError as exc:
            logger.warning("[%s] action aborted: %s", self.name, exc)
            return TickOutcome.ABORTED
        except ExchangeError as exc:
            logger.error("[%s] exchange error, state unchanged: %s", self.name, exc)
            self._event("error", message="exchange error", detail=str(exc))
            return TickOutcome.ERROR
        return outcome

    async def _enforce_drawdown(self, price: float) -> bool:
        """Run the drawdown gate; on a breach liquidate and report True."""
        pos = self._ledger.position
        position_value = pos.amount * price if pos is not None else 0.0
        if not self._risk.check_drawdown(position_value):
            return False
        snapshot = self._risk.snapshot()
        self._event(
            "emergency_stop",
            reason=snapshot.emergency_reason,
            drawdown=round(snapshot.last_drawdown, 6),
            baseline=snapshot.real_baseline,
        )
        if self._journal is not None:
            self._journal.risk("emergency_stop", snapshot.emergency_reason, bot=self.name,
                               drawdown=snapshot.last_drawdown)
        if pos is not None:
            await self._liquidate(price, REASON_DRAWDOWN)
        return True

    async def _liquidate(self, price: float, reason: str) -> None:
        try:
            await self._close(price, reason)
        except (ExchangeError, ExecutionAbortedError) as exc:
            logger.error("[%s] liquidation failed, will retry next tick: %s", self.name, exc)
            self._event("error", message="liquidation failed", detail=str(exc))

    async def _backstop(self, price: float) -> bool:
        """Local stop-loss / take-profit check, independent of resident stops."""
        pos = self._ledger.mark_to_market(price)
        if pos is None:
            return False
        if pos.protective_order_id is not None:
            status = await self._port.fetch_order(pos.protective_order_id)
            if status.is_filled:
                self._update_audit(status.id, OrderStatus.CLOSED, status.filled)
                self._settle_close(status, pos.stop_loss or status.average, REASON_STOP_FILLED)
                await self._reprotect()
                return True
        if pos.stop_loss is not None and price <= pos.stop_loss:
            await self._close(price, REASON_STOP_LOSS)
            return True
        if pos.take_profit is not None and price >= pos.take_profit:
            await self._close(price, REASON_TAKE_PROFIT)
            return True
        return False

    async def _verify_balance(self) -> None:
        now = self._clock()
        if not self._risk.balance_check_due(now):
            return
        balance = await self._port.fetch_balance()
        expected = self._risk.expected_balance
        discrepancy = self._risk.verify_balance(balance.quote_total, now=now)
        if discrepancy is not None:
            self._event("balance_mismatch", expected=expected, observed=balance.quote_total,
                        discrepancy=discrepancy)

    # -- entry --------------------------------------------------------------

    async def _open(self, signal: Signal, price: float) -> TickOutcome:
        if self._ledger.position is not None:
            return TickOutcome.NOOP

        if self._safety is not None:
            verdict = self._safety.check(self._clock().date())
            if not verdict.allowed:
                logger.info("[%s] entry blocked: %s", self.name, verdict.reason)
                self._event("order_rejected", reason=verdict.reason)
                return TickOutcome.REJECTED

        budget = self._risk.allocated_budget
        amount = self._port.amount_to_precision(budget * self._position_fraction / price)
        minimum = self._port.min_order_amount
        if amount <= 0 or amount < minimum:
            raise ExecutionAbortedError(f"order amount {amount} below exchange minimum {minimum}")
        estimated_cost = amount * price + self._ledger.fee(price, amount)
        if estimated_cost > budget:
            raise ExecutionAbortedError(f"order cost {estimated_cost:.4f} exceeds budget {budget:.4f}")

        order = await self._port.create_market_order("buy", amount)
        self._record_submitted(order, price)
        fill = await self._verify_fill(order, price)

        fill_price = fill.average
        filled = fill.filled
        self._record_slippage(price, fill_price)
        pos = self._ledger.open(
            fill_price,
            filled,
            signal.stop_loss,
            signal.take_profit,
            expected_price=price,
            opened_at=self._clock(),
        )
        self._risk.on_entry(fill_price * filled + self._ledger.fee(fill_price, filled))
        if self._safety is not None:
            self._safety.record_entry(self._clock().date())

        self._event(
            "position_opened",
            entry_price=fill_price,
            amount=filled,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            slippage=pos.slippage,
            reason=signal.reason,
        )
        if self._journal is not None:
            self._journal.fill(fill.id, self._port.symbol, "buy", filled, fill_price,
                               expected_price=price, bot=self.name, reason=signal.reason)

        if signal.stop_loss is not None:
            await self._protect(filled, signal.stop_loss)
        return TickOutcome.OPENED

    async def _protect(self, amount: float, stop_price: float) -> None:
        try:
            order = await self._port.place_protective_stop(amount, stop_price)
        except ExchangeError as exc:
            self._ledger.mark_unprotected()
            logger.warning("[%s] protective stop @ %.8f failed, position unprotected: %s",
                           self.name, stop_price, exc)
            self._event("protective_stop_failed", stop_price=stop_price, detail=str(exc))
            return
        self._own_order_ids.add(order.id)
        self._ledger.record_order(Order(
            id=order.id,
            side="sell",
            amount=order.amount,
            price=stop_price,
            timestamp=self._clock(),
            order_type="stop",
        ))
        self._ledger.set_protection(order.id, stop_price)

    # -- exit ---------------------------------------------------------------

    async def _close(self, price: float, reason: str) -> TradeRecord:
        pos = self._ledger.position
        if pos is None:
            raise TradeCoreError("no position to close")

        if pos.protective_order_id is not None:
            stop_fill = await self._cancel_protective(pos.protective_order_id)
            if stop_fill is not None:
                trade = self._settle_close(stop_fill, pos.stop_loss or price, REASON_STOP_FILLED)
                await self._reprotect()
                return trade

        if pos.amount < self._port.min_order_amount:
            return self._write_off_dust(price)

        try:
            amount = pos.amount
            balance = await self._port.fetch_balance()
            if balance.base_free < amount:
                amount = self._port.amount_to_precision(balance.base_free)
            if amount <= 0 or amount < self._port.min_order_amount:
                raise ExecutionAbortedError(
                    f"sell amount {amount} below exchange minimum {self._port.min_order_amount}"
                )
            order = await self._port.create_market_order("sell", amount)
            self._record_submitted(order, price)
            fill = await self._verify_fill(order, price)
        except (ExchangeError, ExecutionAbortedError):
            # put back the stop cancelled above
            await self._reprotect()
            raise

        self._record_slippage(price, fill.average)
        trade = self._settle_close(fill, price, reason)
        await self._reprotect()
        return trade

    async def _cancel_protective(self, order_id: str) -> OrderResult | None:
        """Cancel the resident stop before exiting. Returns it if it already filled."""
        try:
            await self._port.cancel_order(order_id)
        except OrderNotFoundError:
            status = await self._port.fetch_order(order_id)
            if status.is_filled:
                logger.info("[%s] protective stop %s already filled @ %.8f", self.name, order_id, status.average)
                self._update_audit(order_id, OrderStatus.CLOSED, status.filled)
                return status
            self._update_audit(order_id, OrderStatus.CANCELLED)
        else:
            self._update_audit(order_id, OrderStatus.CANCELLED)
        self._ledger.set_protection(None)
        return None

    async def _reprotect(self) -> None:
        """Place a fresh stop for a position that has a stop level but no resident order."""
        pos = self._ledger.position
        if pos is None or pos.stop_loss is None or pos.protective_order_id is not None:
            return
        if pos.amount < self._port.min_order_amount:
            return
        await self._protect(pos.amount, pos.stop_loss)

    def _settle_close(self, fill: OrderResult, expected_price: float, reason: str) -> TradeRecord:
        """Book the filled amount. A remainder stays open; below the exchange minimum it is written off."""
        trade = self._ledger.close(
            fill.average, reason, amount=fill.filled, expected_price=expected_price, closed_at=self._clock(),
        )
        self._book_exit(trade, fill.id)
        rest = self._ledger.position
        if rest is not None:
            self._ledger.set_protection(None)
            logger.warning("[%s] exit filled %.8f, %.8f still held", self.name, trade.amount, rest.amount)
            if rest.amount < self._port.min_order_amount:
                self._write_off_dust(fill.average)
        return trade

    def _write_off_dust(self, price: float) -> TradeRecord:
        """Close an unsellable remainder in the books at *price*; the base stays on the exchange."""
        pos = self._ledger.position
        logger.warning("[%s] writing off %.8f base below exchange minimum %s",
                       self.name, pos.amount, self._port.min_order_amount)
        trade = self._ledger.close(price, REASON_DUST, expected_price=price, closed_at=self._clock())
        self._book_exit(trade, None)
        return trade

    def _book_exit(self, trade: TradeRecord, order_id: str | None) -> None:
        self._risk.on_exit(trade.exit_price * trade.amount - trade.exit_fee)
        if self._safety is not None:
            self._safety.record_pnl(trade.net_profit, self._clock().date())
        self._event(
            "position_closed",
            entry_price=trade.entry_price,
            exit_price=trade.exit_price,
            amount=trade.amount,
            net_profit=round(trade.net_profit, 8),
            profit_pct=round(trade.profit_pct, 4),
            reason=trade.reason,
        )
        if self._journal is not None:
            if order_id is not None:
                self._journal.fill(order_id, self._port.symbol, "sell", trade.amount, trade.exit_price,
                                   expected_price=trade.expected_exit_price, bot=self.name, reason=trade.reason)
            self._journal.trade(self._port.symbol, trade, bot=self.name)

    # -- order helpers ------------------------------------------------------

    def _record_submitted(self, order: OrderResult, expected_price: float) -> None:
        self._own_order_ids.add(order.id)
        self._ledger.record_order(Order(
            id=order.id,
            side=order.side,
            amount=order.amount,
            price=expected_price,
            timestamp=self._clock(),
        ))
        self._event("order_submitted", side=order.side, amount=order.amount,
                    expected_price=expected_price, order_id=order.id)

    async def _verify_fill(self, order: OrderResult, expected_price: float) -> OrderResult:
        """Return the fill, possibly partial, or abort when nothing filled.

        An order still open after one delayed poll is cancelled and fetched
        again: it may have filled in the meantime, fully or in part.
        """
        result = order
        if not result.is_filled:
            await self._sleep(self._fill_wait_s)
            result = await self._port.fetch_order(order.id)
        if result.is_filled:
            self._update_audit(order.id, OrderStatus.CLOSED, result.filled)
            return result

        try:
            await self._port.cancel_order(order.id)
        except ExchangeError as exc:
            logger.warning("[%s] could not cancel unfilled order %s: %s", self.name, order.id, exc)
        try:
            result = await self._port.fetch_order(order.id)
        except ExchangeError as exc:
            logger.warning("[%s] could not re-check order %s after cancel: %s", self.name, order.id, exc)

        if result.is_filled:
            logger.info("[%s] %s order %s filled while being cancelled", self.name, order.side, order.id)
            self._update_audit(order.id, OrderStatus.CLOSED, result.filled)
            return result
        if result.filled > 0:
            if result.average is None:
                result = replace(result, average=expected_price)
            logger.warning("[%s] %s order %s partially filled: %.8f of %.8f",
                           self.name, order.side, order.id, result.filled, order.amount)
            self._update_audit(order.id, OrderStatus.CANCELLED, result.filled)
            self._event("order_partially_filled", side=order.side, amount=order.amount,
                        filled=result.filled, order_id=order.id)
            return result

        self._update_audit(order.id, OrderStatus.CANCELLED, result.filled)
        self._event("order_unfilled", side=order.side, amount=order.amount,
                    filled=result.filled, order_id=order.id)
        raise ExecutionAbortedError(
            f"{order.side} order {order.id} not filled after {self._fill_wait_s}s "
            f"(filled {result.filled} of {order.amount})"
        )

    def _update_audit(self, order_id: str, status: OrderStatus, filled: float | None = None) -> None:
        order = self._ledger.get_order(order_id)
        if order is not None and order.status is OrderStatus.OPEN:
            self._ledger.update_order(order_id, status, filled)

    def _record_slippage(self, expected: float, actual: float) -> None:
        slippage, exceeded = self._slippage.record(expected, actual)
        if exceeded:
            self._event("slippage_warning", slippage=round(slippage, 6),
                        expected_price=expected, fill_price=actual)

    # -- stats --------------------------------------------------------------

    def stats(self, price: float | None = None) -> EngineStats:
        price = price if price is not None else self._last_price
        pos = self._ledger.position
        if pos is not None and price is not None:
            self._ledger.mark_to_market(price)
        position_value = pos.market_value if pos is not None else 0.0
        snapshot = self._risk.snapshot()
        summary = self._ledger.statistics(snapshot.real_baseline)

        consecutive_losses = 0
        for trade in reversed(self._ledger.trades):
            if trade.win:
                break
            consecutive_losses += 1

        return EngineStats(
            name=self.name,
            symbol=self._port.symbol,
            state=snapshot.state,
            mode=snapshot.mode,
            allocated_budget=snapshot.allocated_budget,
            real_baseline=snapshot.real_baseline,
            expected_balance=snapshot.expected_balance,
            total_value=self._risk.total_value(position_value),
            drawdown_pct=self._risk.drawdown(position_value) * 100,
            position=pos,
            total_trades=summary.total_trades,
            win_rate=summary.win_rate,
            profit_factor=summary.profit_factor,
            total_pnl=summary.total_net_profit,
            average_slippage=self._slippage.average(),
            consecutive_losses=consecutive_losses,
            daily_pnl=self._safety.daily_pnl if self._safety else 0.0,
            daily_trades=self._safety.daily_trades if self._safety else 0,
            max_trades_per_day=self._safety.max_trades_per_day if self._safety else 0,
            emergency_reason=snapshot.emergency_reason,
            balance_discrepancy=snapshot.balance_discrepancy,
            last_balance_check=snapshot.last_balance_check,
        )
