"""
Local OHLCV history for one or more pairs (SQLite).

`trader ingest` appends exchange candles here, `trader backtest` replays them
and `trader health` counts them. Rows are keyed by (symbol, timeframe, open
time) with the open time kept as epoch milliseconds, the unit ccxt uses, so
re-ingesting an overlapping window overwrites rather than duplicates.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from trade_core.contracts import Candle

_COLUMNS = "ts_ms, open, high, low, close, volume"


def _to_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _row_to_candle(row: tuple) -> Candle:
    ts_ms, o, h, low, c, vol = row
    return Candle(timestamp=_from_ms(ts_ms), open=o, high=h, low=low, close=c, volume=vol)


class CandleStore:
    """Candle history in a single SQLite file, created on first use.

    Parameters
    ----------
    path:
        Database file; parent directories are created.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as c:
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS candles (
                    symbol TEXT NOT NULL,
                    timeframe TEXT NOT NULL,
                    ts_ms INTEGER NOT NULL,
                    open REAL NOT NULL,
                    high REAL NOT NULL,
                    low REAL NOT NULL,
                    close REAL NOT NULL,
                    volume REAL NOT NULL,
                    PRIMARY KEY (symbol, timeframe, ts_ms)
                )
                """
            )

    @property
    def path(self) -> Path:
        return self._path

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path))

    def _select(self, sql: str, params: Sequence[Any]) -> list[tuple]:
        with self._conn() as c:
            return c.execute(sql, params).fetchall()

    def write_candles(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> int:
        """Insert or overwrite *candles* for the pair; returns how many were given."""
        rows = [
            (symbol, timeframe, _to_ms(candle.timestamp), candle.open, candle.high, candle.low,
             candle.close, candle.volume)
            for candle in candles
        ]
        with self._conn() as c:
            c.executemany(f"INSERT OR REPLACE INTO candles (symbol, timeframe, {_COLUMNS}) "
                          "VALUES (?, ?, ?, ?, ?, ?, ?, ?)", rows)
        return len(rows)

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Candle]:
        """Oldest first, with *since* and *until* both inclusive."""
        sql = f"SELECT {_COLUMNS} FROM candles WHERE symbol = ? AND timeframe = ?"
        params: list[Any] = [symbol, timeframe]
        if since is not None:
            sql += " AND ts_ms >= ?"
            params.append(_to_ms(since))
        if until is not None:
            sql += " AND ts_ms <= ?"
            params.append(_to_ms(until))
        sql += " ORDER BY ts_ms"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_candle(r) for r in self._select(sql, params)]

    def get_last_candles(
        self,
        symbol: str,
        timeframe: str,
        n: int,
        *,
        until: datetime | None = None,
    ) -> list[Candle]:
        """The newest *n* candles (at or before *until*), oldest first."""
        sql = f"SELECT {_COLUMNS} FROM candles WHERE symbol = ? AND timeframe = ?"
        params: list[Any] = [symbol, timeframe]
        if until is not None:
            sql += " AND ts_ms <= ?"
            params.append(_to_ms(until))
        sql += " ORDER BY ts_ms DESC LIMIT ?"
        params.append(n)
        return [_row_to_candle(r) for r in reversed(self._select(sql, params))]

    def count_candles(self, symbol: str, timeframe: str) -> int:
        (count,) = self._select(
            "SELECT COUNT(*) FROM candles WHERE symbol = ? AND timeframe = ?", (symbol, timeframe),
        )[0]
        return count

    def last_timestamp(self, symbol: str, timeframe: str) -> datetime | None:
        """Open time of the newest stored candle; ingest resumes from here."""
        (ts_ms,) = self._select(
            "SELECT MAX(ts_ms) FROM candles WHERE symbol = ? AND timeframe = ?", (symbol, timeframe),
        )[0]
        return _from_ms(ts_ms) if ts_ms is not None else None
