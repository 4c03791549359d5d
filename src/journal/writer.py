"""
Structured journal: append-only JSON lines. Every fill, closed trade and risk
event lands here with enough context to audit the P&L afterwards.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from trade_core.contracts import TradeRecord


def _serialize(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "__dict__") and not isinstance(obj, type):
        return {k: _serialize(v) for k, v in vars(obj).items() if not k.startswith("_")}
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._echo = echo_stdout

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with open(self._path, "a") as f:
            f.write(line)
        if self._echo:
            print(line.rstrip())

    def fill(self, order_id: str, symbol: str, side: str, qty: float, price: float, **extra: Any) -> None:
        self._write("fill", {"order_id": order_id, "symbol": symbol, "side": side, "qty": qty, "price": price, **extra})

    def trade(self, symbol: str, record: TradeRecord, **extra: Any) -> None:
        self._write(
            "trade",
            {
                "symbol": symbol,
                "entry_price": record.entry_price,
                "exit_price": record.exit_price,
                "qty": record.amount,
                "fees": record.fees,
                "gross_profit": record.gross_profit,
                "net_profit": record.net_profit,
                "profit_pct": record.profit_pct,
                "win": record.win,
                "reason": record.reason,
                "opened_at": record.opened_at,
                "closed_at": record.closed_at,
                "entry_slippage": record.entry_slippage,
                "exit_slippage": record.exit_slippage,
                **extra,
            },
        )

    def risk(self, event: str, reason: str, **extra: Any) -> None:
        self._write("risk", {"risk_event": event, "reason": reason, **extra})

    def read(self) -> list[dict]:
        """All records in write order; empty when the journal does not exist yet."""
        if not self._path.exists():
            return []
        with open(self._path) as f:
            return [json.loads(line) for line in f if line.strip()]
