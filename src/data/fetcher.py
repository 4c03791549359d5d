"""
Fetch OHLCV candles from a data source. Async, paginated by timestamp cursor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence

from trade_core.contracts import Candle


@dataclass
class FetchResult:
    """Result of a fetch: candles and the cursor to resume from, if any."""

    candles: list[Candle]
    symbol: str
    timeframe: str
    next_since: datetime | None = None
    pages: int = 0


class CandleFetcher(Protocol):
    """Protocol for candle fetchers. Implement per provider."""

    async def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> FetchResult:
        """Fetch candles; timestamps normalized to UTC, ascending, no duplicates."""
        ...

    async def close(self) -> None:
        ...


@dataclass
class MockCandleFetcher:
    """Serves a fixed candle list; for tests and when no exchange is configured."""

    candles: Sequence[Candle] = field(default_factory=list)
    calls: int = 0

    async def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> FetchResult:
        self.calls += 1
        out = [
            c for c in self.candles
            if (since is None or c.timestamp >= since) and (until is None or c.timestamp <= until)
        ]
        if limit is not None:
            out = out[-limit:] if since is None else out[:limit]
        return FetchResult(candles=list(out), symbol=symbol, timeframe=timeframe, pages=1)

    async def close(self) -> None:
        return None
