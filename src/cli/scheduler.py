"""
Bot runner: drives one engine + one strategy from the shared market feed.

First tick runs immediately, then every tick_interval_s. Ticks are strictly
sequential: the next one is scheduled only after the previous one returned.
Stopping halts the timer, lets an in-flight tick finish, then shuts the
engine down within shutdown_timeout_s.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from data.feed import PollingMarketFeed
from strategies.base import SignalSource
from trade_core.engine import EngineStats, ExecutionEngine, TickOutcome

if TYPE_CHECKING:
    from cli.structured_log import StructuredEventLogger

logger = logging.getLogger("trader.scheduler")

DEFAULT_TICK_INTERVAL_S = 60.0
DEFAULT_SHUTDOWN_TIMEOUT_S = 30.0


def parse_tf_seconds(timeframe: str) -> int:
    """Convert a timeframe string like '15m', '1h' or '1d' to seconds."""
    tf = timeframe.strip().lower()
    units = {"m": 60, "h": 3600, "d": 86400, "w": 604800}
    if not tf or tf[-1] not in units or not tf[:-1].isdigit():
        raise ValueError(f"Unsupported timeframe: {timeframe!r} (use e.g. '1m', '15m', '1h', '1d')")
    return int(tf[:-1]) * units[tf[-1]]


class BotRunner:
    """Timer loop for one bot.

    Parameters
    ----------
    name:
        Bot name (also the engine name).
    engine:
        Engine owned by this runner; replaced on restart by the manager.
    strategy:
        Signal source; its position belief is kept in step with the ledger.
    feed:
        Shared read-only market feed.
    tick_interval_s:
        Delay between the start of consecutive ticks.
    shutdown_timeout_s:
        Upper bound for the in-flight tick and for engine.shutdown().
    """

    def __init__(
        self,
        name: str,
        engine: ExecutionEngine,
        strategy: SignalSource,
        feed: PollingMarketFeed,
        *,
        tick_interval_s: float = DEFAULT_TICK_INTERVAL_S,
        shutdown_timeout_s: float = DEFAULT_SHUTDOWN_TIMEOUT_S,
        events: StructuredEventLogger | None = None,
    ) -> None:
        self.name = name
        self.engine = engine
        self.strategy = strategy
        self._feed = feed
        self._interval = tick_interval_s
        self._shutdown_timeout = shutdown_timeout_s
        self._events = events
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._tick_running = False
        self.ticks = 0
        self.last_outcome: TickOutcome | None = None
        self.last_error: str = ""

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_running(self) -> bool:
        return self._tick_running

    # -- one tick -------------------------------------------------------------

    async def tick(self) -> TickOutcome | None:
        """Analyze the latest snapshot and hand the signal to the engine.

        Returns None when the feed has nothing usable yet.
        """
        if self._tick_running:
            logger.warning("[%s] tick already running, skipping", self.name)
            return None
        snapshot = self._feed.snapshot
        if snapshot is None or len(snapshot) < 2:
            logger.debug("[%s] no market snapshot yet", self.name)
            return None

        self._tick_running = True
        try:
            signal = self.strategy.analyze(list(snapshot.candles), snapshot.price)
            outcome = await self.engine.process_signal(signal, snapshot.price)
            if self.engine.ledger.position is None:
                self.strategy.clear_position()
        finally:
            self._tick_running = False

        self.ticks += 1
        self.last_outcome = outcome
        if outcome is not TickOutcome.NOOP:
            logger.info("[%s] %s %s @ %.8f (%s)", self.name, signal.action.value, outcome.value,
                        snapshot.price, signal.reason)
        if self._events is not None:
            self._events.tick_complete(outcome=outcome.value, action=signal.action.value, price=snapshot.price)
        return outcome

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set():
            started = loop.time()
            await self.tick()
            delay = max(0.0, self._interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.error("[%s] tick loop crashed: %s", self.name, self.last_error, exc_info=exc)
            if self._events is not None:
                self._events.error(message="tick loop crashed", detail=self.last_error)

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Start the engine (baseline, reconciliation) and the tick loop."""
        if self.running:
            return
        await self.engine.start()
        pos = self.engine.ledger.position
        if pos is not None and pos.recovered:
            self.strategy.restore_position(pos.entry_price, self.engine.last_price or pos.entry_price)
            logger.info("[%s] strategy restored recovered position @ %.8f", self.name, pos.entry_price)
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        self._task.add_done_callback(self._on_done)
        logger.info("[%s] started (every %.0fs)", self.name, self._interval)

    async def stop(self) -> bool:
        """Halt the timer, then shut the engine down. Returns False on timeout."""
        self._stopping.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                logger.error("[%s] in-flight tick did not finish within %.0fs", self.name, self._shutdown_timeout)
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                # already reported by _on_done
                logger.debug("[%s] tick loop ended with %s", self.name, exc)
            self._task = None

        price = self._feed.snapshot.price if self._feed.snapshot is not None else None
        try:
            await asyncio.wait_for(self.engine.shutdown(price), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error("[%s] engine shutdown exceeded %.0fs", self.name, self._shutdown_timeout)
            if self._events is not None:
                self._events.error(message="shutdown timed out", detail=f"{self._shutdown_timeout}s")
            return False
        logger.info("[%s] stopped after %d tick(s)", self.name, self.ticks)
        return True

    def stats(self) -> EngineStats:
        return self.engine.stats()
