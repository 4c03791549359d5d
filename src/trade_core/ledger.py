"""
Position ledger: at most one open long position, closed-trade history,
and an append-only order audit trail.

Single source of truth for realized and unrealized P&L. Fees are charged
per side as notional * fee_rate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from trade_core.contracts import Order, OrderStatus, Position, TradeRecord
from trade_core.errors import AlreadyOpenError, LedgerError, NoPositionError
from trade_core.metrics import TradeStatistics, compute_statistics

logger = logging.getLogger("trader.ledger")

# Amounts at or below this are treated as fully closed.
AMOUNT_EPSILON = 1e-12


def _utc(ts: datetime | None) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def relative_slippage(expected: float | None, actual: float) -> float | None:
    """|actual - expected| / expected, or None when there was no expectation."""
    if expected is None or expected <= 0:
        return None
    return abs(actual - expected) / expected


class PositionLedger:
    """In-memory position and trade book for one engine instance.

    Parameters
    ----------
    fee_rate:
        Fee per trade side as a fraction of notional (0.001 = 0.1%).
    """

    def __init__(self, fee_rate: float = 0.001) -> None:
        if fee_rate < 0:
            raise ValueError(f"fee_rate must be >= 0, got {fee_rate}")
        self._fee_rate = fee_rate
        self._position: Position | None = None
        self._trades: list[TradeRecord] = []
        self._orders: dict[str, Order] = {}

    @property
    def fee_rate(self) -> float:
        return self._fee_rate

    @property
    def position(self) -> Position | None:
        return self._position

    @property
    def has_position(self) -> bool:
        return self._position is not None

    @property
    def trades(self) -> tuple[TradeRecord, ...]:
        return tuple(self._trades)

    @property
    def orders(self) -> tuple[Order, ...]:
        return tuple(self._orders.values())

    def fee(self, price: float, amount: float) -> float:
        return price * amount * self._fee_rate

    # -- position lifecycle -------------------------------------------------

    def open(
        self,
        entry_price: float,
        amount: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        *,
        expected_price: float | None = None,
        opened_at: datetime | None = None,
        recovered: bool = False,
    ) -> Position:
        """Open the single position. Raises AlreadyOpenError if one exists."""
        if self._position is not None:
            raise AlreadyOpenError(
                f"position already open: {self._position.amount} @ {self._position.entry_price}"
            )
        if entry_price <= 0 or amount <= 0:
            raise LedgerError(f"invalid entry: price={entry_price} amount={amount}")

        self._position = Position(
            entry_price=entry_price,
            amount=amount,
            current_price=entry_price,
            opened_at=_utc(opened_at),
            stop_loss=stop_loss,
            take_profit=take_profit,
            expected_price=expected_price,
            actual_fill_price=entry_price,
            slippage=relative_slippage(expected_price, entry_price),
            recovered=recovered,
        )
        logger.info(
            "Opened long %.8f @ %.8f (stop=%s target=%s%s)",
            amount, entry_price, stop_loss, take_profit, ", recovered" if recovered else "",
        )
        return self._position

    def close(
        self,
        exit_price: float,
        reason: str,
        *,
        amount: float | None = None,
        expected_price: float | None = None,
        closed_at: datetime | None = None,
    ) -> TradeRecord:
        """Close *amount* of the position (all of it by default) and record the round trip.

        A partial close books P&L and both fees on the closed amount only; the
        remainder stays open at the same entry price.
        """
        pos = self._position
        if pos is None:
            raise NoPositionError("no open position to close")
        if exit_price <= 0:
            raise LedgerError(f"invalid exit price: {exit_price}")
        closed = pos.amount if amount is None else min(amount, pos.amount)
        if closed <= 0:
            raise LedgerError(f"invalid close amount: {amount}")

        entry_fee = self.fee(pos.entry_price, closed)
        exit_fee = self.fee(exit_price, closed)
        gross = (exit_price - pos.entry_price) * closed
        net = gross - (entry_fee + exit_fee)
        record = TradeRecord(
            entry_price=pos.entry_price,
            exit_price=exit_price,
            amount=closed,
            entry_fee=entry_fee,
            exit_fee=exit_fee,
            gross_profit=gross,
            net_profit=net,
            profit_pct=net / (pos.entry_price * closed) * 100,
            win=net > 0,
            reason=reason,
            opened_at=pos.opened_at,
            closed_at=_utc(closed_at),
            expected_entry_price=pos.expected_price,
            expected_exit_price=expected_price,
            entry_slippage=pos.slippage,
            exit_slippage=relative_slippage(expected_price, exit_price),
        )
        self._trades.append(record)

        remaining = pos.amount - closed
        if remaining > AMOUNT_EPSILON:
            pos.amount = remaining
            self.mark_to_market(pos.current_price)
            logger.info(
                "Reduced long by %.8f: %.8f -> %.8f net=%.4f (%s), %.8f still open",
                closed, pos.entry_price, exit_price, net, reason, remaining,
            )
        else:
            self._position = None
            logger.info(
                "Closed long %.8f: %.8f -> %.8f net=%.4f (%s)",
                closed, pos.entry_price, exit_price, net, reason,
            )
        return record

    def mark_to_market(self, current_price: float) -> Position | None:
        """Refresh current price and unrealized P&L of the open position."""
        pos = self._position
        if pos is None:
            return None
        pos.current_price = current_price
        pos.unrealized_pnl = (current_price - pos.entry_price) * pos.amount
        return pos

    def set_protection(self, order_id: str | None, stop_price: float | None = None) -> None:
        """Attach (or detach with None) the exchange-resident protective order."""
        pos = self._require_position()
        pos.protective_order_id = order_id
        if stop_price is not None:
            pos.stop_loss = stop_price
        pos.unprotected = order_id is None and pos.stop_loss is not None

    def mark_unprotected(self) -> None:
        pos = self._require_position()
        pos.protective_order_id = None
        pos.unprotected = True

    def _require_position(self) -> Position:
        if self._position is None:
            raise NoPositionError("no open position")
        return self._position

    # -- order audit trail --------------------------------------------------

    def record_order(self, order: Order) -> Order:
        if order.id in self._orders:
            raise LedgerError(f"order {order.id} already recorded")
        self._orders[order.id] = order
        return order

    def update_order(self, order_id: str, status: OrderStatus, filled: float | None = None) -> Order:
        """Transition an open order. Terminal orders are never rewritten."""
        order = self._orders.get(order_id)
        if order is None:
            raise LedgerError(f"unknown order {order_id}")
        if order.status is not OrderStatus.OPEN:
            raise LedgerError(f"order {order_id} already {order.status.value}")
        order.status = status
        if filled is not None:
            order.filled = filled
        return order

    def get_order(self, order_id: str) -> Order | None:
        return self._orders.get(order_id)

    # -- statistics ---------------------------------------------------------

    def realized_pnl(self) -> float:
        return sum(t.net_profit for t in self._trades)

    def statistics(self, initial_capital: float) -> TradeStatistics:
        return compute_statistics(self._trades, initial_capital)
