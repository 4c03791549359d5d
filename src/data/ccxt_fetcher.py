"""
ccxt candle fetcher: implements CandleFetcher with ccxt's async client.

Paginates fetch_ohlcv forward from ``since`` (exchange pages are capped,
1000 rows on Binance) until ``until`` or the exchange runs dry. Public
endpoints only; no credentials needed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import ccxt.async_support as ccxt

from data.fetcher import FetchResult
from execution.ccxt_exchange import translate_error
from trade_core.contracts import Candle

logger = logging.getLogger("trader.data")

DEFAULT_PAGE_LIMIT = 1000


def _to_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def parse_ohlcv(row: list[Any]) -> Candle:
    """[ms, open, high, low, close, volume] -> Candle (UTC)."""
    return Candle(
        timestamp=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5] or 0.0),
    )


class CcxtCandleFetcher:
    """Fetch OHLCV candles from any ccxt exchange."""

    def __init__(
        self,
        exchange_id: str = "binance",
        *,
        sandbox: bool = False,
        timeout_s: float = 10.0,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        client: Any = None,
    ) -> None:
        if client is None:
            exchange_class = getattr(ccxt, exchange_id)
            client = exchange_class({
                "enableRateLimit": True,
                "options": {"defaultType": "spot"},
            })
            if sandbox:
                client.set_sandbox_mode(True)
        self._client = client
        self._timeout = timeout_s
        self._page_limit = page_limit

    async def _page(self, symbol: str, timeframe: str, since_ms: int | None, limit: int) -> list[list[Any]]:
        try:
            return await asyncio.wait_for(
                self._client.fetch_ohlcv(symbol, timeframe, since_ms, limit),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, ccxt.BaseError) as exc:
            raise translate_error(exc) from exc

    async def fetch(
        self,
        symbol: str,
        timeframe: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> FetchResult:
        """Fetch candles; normalize timestamps to UTC. Returns FetchResult.

        Without ``since`` a single page of the most recent ``limit`` candles
        is returned (used by the live feed).
        """
        if since is None:
            rows = await self._page(symbol, timeframe, None, limit or self._page_limit)
            candles = [parse_ohlcv(r) for r in rows]
            return FetchResult(candles=candles, symbol=symbol, timeframe=timeframe, pages=1)

        step_ms = self._client.parse_timeframe(timeframe) * 1000
        cursor = _to_ms(since)
        end_ms = _to_ms(until) if until is not None else None
        seen: set[int] = set()
        candles: list[Candle] = []
        pages = 0

        while True:
            rows = await self._page(symbol, timeframe, cursor, self._page_limit)
            pages += 1
            if end_ms is not None:
                rows = [r for r in rows if r[0] <= end_ms]
            fresh = [r for r in rows if r[0] not in seen]
            if not fresh:
                break
            for r in fresh:
                seen.add(r[0])
                candles.append(parse_ohlcv(r))
            if limit is not None and len(candles) >= limit:
                candles = candles[:limit]
                break
            cursor = fresh[-1][0] + step_ms
            if end_ms is not None and cursor > end_ms:
                break

        candles.sort(key=lambda c: c.timestamp)
        next_since = (
            datetime.fromtimestamp((_to_ms(candles[-1].timestamp) + step_ms) / 1000, tz=timezone.utc)
            if candles else None
        )
        logger.info("Fetched %d candles for %s %s in %d page(s)", len(candles), symbol, timeframe, pages)
        return FetchResult(
            candles=candles,
            symbol=symbol,
            timeframe=timeframe,
            next_since=next_since,
            pages=pages,
        )

    async def close(self) -> None:
        await self._client.close()
