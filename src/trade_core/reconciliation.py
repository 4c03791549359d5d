"""
Startup reconciliation: rebuild in-memory state from what the exchange holds.

Runs only for exclusive-mode engines; an isolated engine must never adopt
holdings it did not create. A held base balance at or above the exchange
minimum becomes a recovered position priced at the current market (the true
entry is unknowable). A resident sell stop of matching size is adopted as its
protection; every other resident stop is an orphan and gets cancelled.

Idempotent: if the ledger already holds a position it is kept as is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from execution.port import ExchangeError, ExecutionPort, OrderResult
from trade_core.contracts import CapitalMode, Order, Position
from trade_core.ledger import PositionLedger
from trade_core.risk_controller import RiskController

if TYPE_CHECKING:
    from cli.structured_log import StructuredEventLogger

logger = logging.getLogger("trader.reconcile")

# Relative difference allowed between a held amount and a stop's amount.
AMOUNT_TOLERANCE = 0.01


@dataclass
class ReconciliationReport:
    recovered: Position | None = None
    already_open: bool = False
    protected: bool = False
    cancelled_orphans: list[str] = field(default_factory=list)
    skipped: str = ""


def _matches(order: OrderResult, amount: float, tolerance: float) -> bool:
    return abs(order.amount - amount) <= tolerance * amount


async def reconcile(
    port: ExecutionPort,
    ledger: PositionLedger,
    risk: RiskController,
    *,
    price: float,
    events: StructuredEventLogger | Any = None,
    amount_tolerance: float = AMOUNT_TOLERANCE,
) -> ReconciliationReport:
    """Recover a held position and clean up orphaned stops."""
    report = ReconciliationReport()
    if risk.mode is not CapitalMode.EXCLUSIVE:
        report.skipped = "isolated mode"
        logger.info("Skipping reconciliation (isolated mode)")
        return report

    balance = await port.fetch_balance()
    stops = [o for o in await port.fetch_open_orders() if o.is_protective]
    adopted: OrderResult | None = None

    if ledger.position is not None:
        report.already_open = True
        pos = ledger.position
        adopted = next((o for o in stops if o.id == pos.protective_order_id), None)
        report.protected = adopted is not None
        logger.info("Position already tracked (%.8f @ %.8f); not recovering again", pos.amount, pos.entry_price)
    elif balance.base_total > 0 and balance.base_total >= port.min_order_amount:
        held = balance.base_total
        adopted = next((o for o in stops if _matches(o, held, amount_tolerance)), None)
        pos = ledger.open(
            price,
            held,
            stop_loss=adopted.stop_price if adopted else None,
            recovered=True,
        )
        if adopted is not None:
            ledger.record_order(Order(
                id=adopted.id,
                side="sell",
                amount=adopted.amount,
                price=adopted.stop_price,
                timestamp=adopted.timestamp or datetime.now(timezone.utc),
                order_type="stop",
            ))
            ledger.set_protection(adopted.id, adopted.stop_price)
            report.protected = True
            logger.info("Recovered position %.8f @ %.8f protected by stop %s @ %.8f",
                        held, price, adopted.id, adopted.stop_price)
        else:
            ledger.mark_unprotected()
            logger.critical(
                "Recovered position %.8f @ %.8f has NO protective stop; monitoring locally only",
                held, price,
            )
        risk.on_recovered(price * held)
        report.recovered = pos
        if events is not None:
            events.position_recovered(
                amount=held,
                price=price,
                stop_price=adopted.stop_price if adopted else None,
                protected=adopted is not None,
            )
    elif balance.base_total > 0:
        logger.info("Ignoring dust balance %.8f (minimum %.8f)", balance.base_total, port.min_order_amount)

    for order in stops:
        if adopted is not None and order.id == adopted.id:
            continue
        try:
            await port.cancel_order(order.id)
        except ExchangeError as exc:
            logger.warning("Could not cancel orphaned stop %s: %s", order.id, exc)
            continue
        report.cancelled_orphans.append(order.id)
        logger.warning("Cancelled orphaned stop %s (%.8f @ %s)", order.id, order.amount, order.stop_price)
        if events is not None:
            events.orphan_order_cancelled(order_id=order.id, amount=order.amount, stop_price=order.stop_price)

    return report

