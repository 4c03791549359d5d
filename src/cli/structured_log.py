"""
Structured JSON event logger for container observability.

Emits one JSON object per line to stderr. Events are designed to be
parsed by log aggregators (Grafana Loki, CloudWatch, ELK).

Optional webhook: when configured, alert events (emergency_stop, error,
balance_mismatch, protective_stop_failed) are POSTed to the URL.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("trader.events")

ALERT_EVENTS = frozenset({
    "emergency_stop",
    "error",
    "balance_mismatch",
    "protective_stop_failed",
})


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    def __init__(
        self,
        symbol: str,
        *,
        bot: str = "",
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
    ) -> None:
        self._symbol = symbol
        self._bot = bot
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr

    def for_bot(self, bot: str) -> StructuredEventLogger:
        """Same sink and webhook, tagged with another bot name."""
        return StructuredEventLogger(
            self._symbol,
            bot=bot,
            enabled=self._enabled,
            webhook_url=self._webhook_url,
            stream=self._stream,
        )

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "bot": self._bot,
            "symbol": self._symbol,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record, default=str) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in ALERT_EVENTS:
            self._post_webhook(record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record, default=str).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    # -- lifecycle ------------------------------------------------------------

    def engine_started(self, mode: str, baseline: float, allocated: float, recovered: bool) -> dict:
        return self._emit(
            "engine_started",
            mode=mode,
            baseline=baseline,
            allocated=allocated,
            recovered=recovered,
        )

    def tick_complete(self, outcome: str, action: str, price: float) -> dict:
        return self._emit("tick_complete", outcome=outcome, action=action, price=price)

    def shutdown(self, trades: int, cancelled_orders: int, position_open: bool) -> dict:
        return self._emit(
            "shutdown",
            trades=trades,
            cancelled_orders=cancelled_orders,
            position_open=position_open,
        )

    # -- orders and positions -------------------------------------------------

    def order_submitted(self, side: str, amount: float, expected_price: float, order_id: str) -> dict:
        return self._emit(
            "order_submitted",
            side=side,
            amount=amount,
            expected_price=expected_price,
            order_id=order_id,
        )

    def order_unfilled(self, side: str, amount: float, filled: float, order_id: str) -> dict:
        return self._emit("order_unfilled", side=side, amount=amount, filled=filled, order_id=order_id)

    def order_partially_filled(self, side: str, amount: float, filled: float, order_id: str) -> dict:
        return self._emit("order_partially_filled", side=side, amount=amount, filled=filled, order_id=order_id)

    def order_rejected(self, reason: str) -> dict:
        return self._emit("order_rejected", reason=reason)

    def position_opened(
        self,
        entry_price: float,
        amount: float,
        stop_loss: float | None,
        take_profit: float | None,
        slippage: float | None,
        reason: str,
    ) -> dict:
        return self._emit(
            "position_opened",
            entry_price=entry_price,
            amount=amount,
            stop_loss=stop_loss,
            take_profit=take_profit,
            slippage=slippage,
            reason=reason,
        )

    def position_closed(
        self,
        entry_price: float,
        exit_price: float,
        amount: float,
        net_profit: float,
        profit_pct: float,
        reason: str,
    ) -> dict:
        return self._emit(
            "position_closed",
            entry_price=entry_price,
            exit_price=exit_price,
            amount=amount,
            net_profit=net_profit,
            profit_pct=profit_pct,
            reason=reason,
        )

    def slippage_warning(self, slippage: float, expected_price: float, fill_price: float) -> dict:
        return self._emit(
            "slippage_warning",
            slippage=slippage,
            expected_price=expected_price,
            fill_price=fill_price,
        )

    def protective_stop_failed(self, stop_price: float, detail: str = "") -> dict:
        return self._emit("protective_stop_failed", stop_price=stop_price, detail=detail)

    # -- reconciliation and risk ----------------------------------------------

    def position_recovered(self, amount: float, price: float, stop_price: float | None, protected: bool) -> dict:
        return self._emit(
            "position_recovered",
            amount=amount,
            price=price,
            stop_price=stop_price,
            protected=protected,
        )

    def orphan_order_cancelled(self, order_id: str, amount: float, stop_price: float | None) -> dict:
        return self._emit("orphan_order_cancelled", order_id=order_id, amount=amount, stop_price=stop_price)

    def balance_mismatch(self, expected: float, observed: float, discrepancy: float) -> dict:
        return self._emit(
            "balance_mismatch",
            expected=expected,
            observed=observed,
            discrepancy=round(discrepancy, 8),
        )

    def emergency_stop(self, reason: str | None, drawdown: float, baseline: float) -> dict:
        return self._emit("emergency_stop", reason=reason, drawdown=drawdown, baseline=baseline)

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)
