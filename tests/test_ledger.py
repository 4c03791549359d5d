"""Tests for trade_core.ledger: single position, fee accounting, order audit trail."""

from datetime import datetime, timedelta, timezone

import pytest

from trade_core.contracts import Order, OrderStatus
from trade_core.errors import AlreadyOpenError, LedgerError, NoPositionError
from trade_core.ledger import PositionLedger, relative_slippage

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestOpenClose:
    def test_round_trip_net_after_fees(self) -> None:
        ledger = PositionLedger(0.001)
        ledger.open(100.0, 1.0)
        trade = ledger.close(110.0, "take profit")
        assert trade.gross_profit == pytest.approx(10.0)
        assert trade.entry_fee == pytest.approx(0.1)
        assert trade.exit_fee == pytest.approx(0.11)
        assert trade.net_profit == pytest.approx(9.79)
        assert trade.profit_pct == pytest.approx(9.79)
        assert trade.win is True
        assert ledger.position is None

    def test_losing_trade_recorded(self) -> None:
        ledger = PositionLedger(0.001)
        ledger.open(100.0, 2.0)
        trade = ledger.close(95.0, "stop loss")
        assert trade.net_profit < 0
        assert trade.win is False
        assert ledger.trades == (trade,)

    def test_fee_only_loss_is_not_a_win(self) -> None:
        ledger = PositionLedger(0.001)
        ledger.open(100.0, 1.0)
        trade = ledger.close(100.0, "signal")
        assert trade.gross_profit == 0.0
        assert trade.net_profit == pytest.approx(-0.2)
        assert trade.win is False

    def test_partial_close_books_closed_amount_only(self) -> None:
        ledger = PositionLedger(0.001)
        ledger.open(100.0, 5.0)
        trade = ledger.close(110.0, "signal", amount=2.0)
        assert trade.amount == 2.0
        assert trade.entry_fee == pytest.approx(0.2)
        assert trade.exit_fee == pytest.approx(0.22)
        assert trade.net_profit == pytest.approx(20.0 - 0.42)
        assert trade.profit_pct == pytest.approx(19.58 / 200.0 * 100)
        assert ledger.position.amount == pytest.approx(3.0)
        assert ledger.position.entry_price == 100.0

        rest = ledger.close(110.0, "signal")
        assert rest.amount == pytest.approx(3.0)
        assert ledger.position is None

    def test_close_amount_capped_at_position(self) -> None:
        ledger = PositionLedger(0.001)
        ledger.open(100.0, 1.0)
        assert ledger.close(100.0, "signal", amount=1.5).amount == 1.0
        assert ledger.position is None

    def test_non_positive_close_amount_rejected(self) -> None:
        ledger = PositionLedger()
        ledger.open(100.0, 1.0)
        with pytest.raises(LedgerError):
            ledger.close(100.0, "signal", amount=0.0)
        assert ledger.position is not None

    def test_second_open_rejected(self) -> None:
        ledger = PositionLedger()
        ledger.open(100.0, 1.0)
        with pytest.raises(AlreadyOpenError):
            ledger.open(101.0, 1.0)
        assert ledger.position.entry_price == 100.0

    def test_close_when_flat_raises(self) -> None:
        with pytest.raises(NoPositionError):
            PositionLedger().close(100.0, "signal")

    def test_invalid_entry_rejected(self) -> None:
        ledger = PositionLedger()
        with pytest.raises(LedgerError):
            ledger.open(0.0, 1.0)
        with pytest.raises(LedgerError):
            ledger.open(100.0, -1.0)

    def test_negative_fee_rate_rejected(self) -> None:
        with pytest.raises(ValueError):
            PositionLedger(-0.01)

    def test_holding_time_and_slippage(self) -> None:
        ledger = PositionLedger(0.0)
        ledger.open(101.0, 1.0, expected_price=100.0, opened_at=T0)
        trade = ledger.close(99.0, "signal", expected_price=100.0, closed_at=T0 + timedelta(minutes=90))
        assert trade.holding_minutes == pytest.approx(90.0)
        assert trade.entry_slippage == pytest.approx(0.01)
        assert trade.exit_slippage == pytest.approx(0.01)
        assert trade.expected_entry_price == 100.0


class TestMarkToMarket:
    def test_updates_unrealized_only(self) -> None:
        ledger = PositionLedger(0.001)
        ledger.open(100.0, 2.0)
        pos = ledger.mark_to_market(105.0)
        assert pos.current_price == 105.0
        assert pos.unrealized_pnl == pytest.approx(10.0)
        assert ledger.trades == ()
        assert ledger.realized_pnl() == 0.0

    def test_flat_returns_none(self) -> None:
        assert PositionLedger().mark_to_market(100.0) is None


class TestProtection:
    def test_set_and_clear_protection(self) -> None:
        ledger = PositionLedger()
        ledger.open(100.0, 1.0, stop_loss=95.0)
        ledger.set_protection("sim-9", 95.0)
        assert ledger.position.protective_order_id == "sim-9"
        assert ledger.position.unprotected is False
        ledger.set_protection(None)
        assert ledger.position.unprotected is True

    def test_mark_unprotected(self) -> None:
        ledger = PositionLedger()
        ledger.open(100.0, 1.0, stop_loss=95.0)
        ledger.mark_unprotected()
        assert ledger.position.unprotected is True
        assert ledger.position.protective_order_id is None


class TestOrderAudit:
    def test_record_and_transition(self) -> None:
        ledger = PositionLedger()
        ledger.record_order(Order("o-1", "buy", 1.0, 100.0, T0))
        ledger.update_order("o-1", OrderStatus.CLOSED, 1.0)
        order = ledger.get_order("o-1")
        assert order.status is OrderStatus.CLOSED
        assert order.filled == 1.0

    def test_terminal_order_not_rewritten(self) -> None:
        ledger = PositionLedger()
        ledger.record_order(Order("o-1", "buy", 1.0, 100.0, T0))
        ledger.update_order("o-1", OrderStatus.CANCELLED)
        with pytest.raises(LedgerError):
            ledger.update_order("o-1", OrderStatus.CLOSED, 1.0)

    def test_duplicate_id_rejected(self) -> None:
        ledger = PositionLedger()
        ledger.record_order(Order("o-1", "buy", 1.0, 100.0, T0))
        with pytest.raises(LedgerError):
            ledger.record_order(Order("o-1", "sell", 1.0, 100.0, T0))

    def test_unknown_order(self) -> None:
        with pytest.raises(LedgerError):
            PositionLedger().update_order("nope", OrderStatus.CLOSED)


def test_relative_slippage_without_expectation() -> None:
    assert relative_slippage(None, 100.0) is None
    assert relative_slippage(100.0, 100.5) == pytest.approx(0.005)
