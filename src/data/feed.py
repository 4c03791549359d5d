"""
Polling market feed: a background asyncio task that keeps the most recent
candles for one pair and publishes them as an immutable snapshot.

The feed only reads market data. Engines and strategies consume the latest
snapshot; nothing here touches ledger or risk state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from data.fetcher import CandleFetcher
from execution.port import ExchangeError
from trade_core.contracts import Candle

logger = logging.getLogger("trader.feed")

DEFAULT_POLL_S = 15.0
DEFAULT_MAX_BACKOFF_S = 300.0


@dataclass(frozen=True)
class MarketSnapshot:
    """Recent candles (ascending) and the latest price at fetch time."""

    symbol: str
    timeframe: str
    candles: tuple[Candle, ...]
    price: float
    fetched_at: datetime

    def __len__(self) -> int:
        return len(self.candles)


class PollingMarketFeed:
    """Poll *fetcher* every *poll_interval_s*; back off exponentially on errors."""

    def __init__(
        self,
        fetcher: CandleFetcher,
        symbol: str,
        timeframe: str,
        *,
        history: int = 100,
        poll_interval_s: float = DEFAULT_POLL_S,
        max_backoff_s: float = DEFAULT_MAX_BACKOFF_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.symbol = symbol
        self.timeframe = timeframe
        self._fetcher = fetcher
        self._history = history
        self._interval = poll_interval_s
        self._max_backoff = max_backoff_s
        self._sleep = sleep
        self._snapshot: MarketSnapshot | None = None
        self._task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._failures = 0

    @property
    def snapshot(self) -> MarketSnapshot | None:
        return self._snapshot

    @property
    def failures(self) -> int:
        """Consecutive failed polls since the last success."""
        return self._failures

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        if self._failures == 0:
            return self._interval
        return min(self._interval * (2 ** self._failures), self._max_backoff)

    async def refresh(self) -> MarketSnapshot | None:
        """One poll. Keeps the previous snapshot when the fetch fails."""
        try:
            result = await self._fetcher.fetch(self.symbol, self.timeframe, limit=self._history)
        except ExchangeError as exc:
            self._failures += 1
            logger.warning(
                "Feed poll %s %s failed (%d in a row, retry in %.0fs): %s",
                self.symbol, self.timeframe, self._failures, self.next_delay(), exc,
            )
            return self._snapshot

        if not result.candles:
            logger.debug("Feed poll %s %s returned no candles", self.symbol, self.timeframe)
            return self._snapshot

        self._failures = 0
        candles = tuple(result.candles[-self._history:])
        self._snapshot = MarketSnapshot(
            symbol=self.symbol,
            timeframe=self.timeframe,
            candles=candles,
            price=candles[-1].close,
            fetched_at=datetime.now(timezone.utc),
        )
        self._ready.set()
        return self._snapshot

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await self._sleep(self.next_delay())

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Feed started: %s %s every %.0fs", self.symbol, self.timeframe, self._interval)

    async def wait_ready(self, timeout: float) -> MarketSnapshot | None:
        """Wait for the first successful poll; None on timeout."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Feed %s not ready after %.0fs", self.symbol, timeout)
        return self._snapshot

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Feed stopped: %s %s", self.symbol, self.timeframe)
