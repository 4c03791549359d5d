"""Tests for the bot runner and manager (simulated exchange, in-memory feed, short intervals)."""

import asyncio
from unittest.mock import MagicMock

import pytest

from cli.manager import BotManager
from cli.scheduler import BotRunner, parse_tf_seconds
from config import build_config
from conftest import build_engine, make_candles
from data.feed import PollingMarketFeed
from data.fetcher import MockCandleFetcher
from execution.simulated import SimulatedExchange
from trade_core.contracts import RiskState, Signal, SignalAction
from trade_core.engine import TickOutcome
from trade_core.safety import SafetyGuard


class StubStrategy:
    """Always answers with the same action; records position callbacks."""

    name = "stub"

    def __init__(self, action: SignalAction = SignalAction.HOLD, *, error: Exception | None = None) -> None:
        self.action = action
        self.error = error
        self.cleared = 0
        self.restored: tuple[float, float] | None = None

    def analyze(self, candles, current_price: float) -> Signal:
        if self.error is not None:
            raise self.error
        return Signal(self.action, current_price, "stub")

    def restore_position(self, entry_price: float, current_price: float) -> None:
        self.restored = (entry_price, current_price)

    def clear_position(self) -> None:
        self.cleared += 1


async def _ready_feed(closes=(100.0, 100.0, 100.0)) -> PollingMarketFeed:
    feed = PollingMarketFeed(MockCandleFetcher(make_candles(list(closes))), "BTC/USDT", "1m")
    await feed.refresh()
    return feed


# ---------------------------------------------------------------------------
# parse_tf_seconds
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("tf, seconds", [("1m", 60), ("15m", 900), ("1h", 3600), ("4H", 14_400), ("1d", 86_400), ("1w", 604_800)])
def test_parse_tf_seconds(tf: str, seconds: int) -> None:
    assert parse_tf_seconds(tf) == seconds


@pytest.mark.parametrize("tf", ["", "m", "15x", "1.5h", "abc"])
def test_parse_tf_seconds_invalid(tf: str) -> None:
    with pytest.raises(ValueError, match="Unsupported timeframe"):
        parse_tf_seconds(tf)


# ---------------------------------------------------------------------------
# BotRunner.tick
# ---------------------------------------------------------------------------


class TestTick:
    @pytest.mark.asyncio
    async def test_no_snapshot_skips(self, exchange: SimulatedExchange) -> None:
        feed = PollingMarketFeed(MockCandleFetcher([]), "BTC/USDT", "1m")
        engine = build_engine(exchange)
        await engine.start()
        runner = BotRunner("test", engine, StubStrategy(SignalAction.BUY), feed)
        assert await runner.tick() is None
        assert runner.ticks == 0

    @pytest.mark.asyncio
    async def test_buy_signal_reaches_engine(self, exchange: SimulatedExchange) -> None:
        events = MagicMock()
        engine = build_engine(exchange)
        await engine.start()
        runner = BotRunner("test", engine, StubStrategy(SignalAction.BUY), await _ready_feed(), events=events)

        assert await runner.tick() is TickOutcome.OPENED
        assert engine.ledger.position is not None
        assert runner.last_outcome is TickOutcome.OPENED
        events.tick_complete.assert_called_once_with(outcome="opened", action="buy", price=100.0)

    @pytest.mark.asyncio
    async def test_rejected_entry_clears_strategy_belief(self, exchange: SimulatedExchange) -> None:
        engine = build_engine(exchange, safety=SafetyGuard(kill_switch=True))
        await engine.start()
        strategy = StubStrategy(SignalAction.BUY)
        runner = BotRunner("test", engine, strategy, await _ready_feed())

        assert await runner.tick() is TickOutcome.REJECTED
        assert strategy.cleared == 1


# ---------------------------------------------------------------------------
# BotRunner lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_ticks_and_stop_flattens(self, exchange: SimulatedExchange) -> None:
        engine = build_engine(exchange)
        runner = BotRunner("test", engine, StubStrategy(SignalAction.BUY), await _ready_feed(),
                           tick_interval_s=0.01, shutdown_timeout_s=1.0)
        await runner.start()
        assert runner.running
        await asyncio.sleep(0.05)

        assert await runner.stop() is True
        assert not runner.running
        assert runner.ticks >= 1
        assert engine.ledger.position is None
        assert len(engine.ledger.trades) == 1
        assert engine.ledger.trades[0].reason == "shutdown"

    @pytest.mark.asyncio
    async def test_recovered_position_restored_into_strategy(self) -> None:
        port = SimulatedExchange(quote_balance=9_800.0, base_balance=2.0, price=100.0)
        engine = build_engine(port, budget=6_000.0, capital_mode="exclusive")
        strategy = StubStrategy()
        runner = BotRunner("test", engine, strategy, await _ready_feed(), tick_interval_s=10.0)
        await runner.start()
        assert strategy.restored == (100.0, 100.0)
        await runner.stop()

    @pytest.mark.asyncio
    async def test_crashed_loop_reported(self, exchange: SimulatedExchange) -> None:
        events = MagicMock()
        engine = build_engine(exchange)
        runner = BotRunner("test", engine, StubStrategy(error=RuntimeError("bad indicator")), await _ready_feed(),
                           tick_interval_s=0.01, events=events)
        await runner.start()
        await asyncio.sleep(0.02)

        assert not runner.running
        assert "RuntimeError" in runner.last_error
        events.error.assert_called_once()
        assert await runner.stop() is True

    @pytest.mark.asyncio
    async def test_shutdown_timeout_returns_false(self, exchange: SimulatedExchange) -> None:
        async def hang(price=None, reason="shutdown"):
            await asyncio.sleep(1)

        events = MagicMock()
        engine = build_engine(exchange)
        runner = BotRunner("test", engine, StubStrategy(), await _ready_feed(),
                           tick_interval_s=10.0, shutdown_timeout_s=0.01, events=events)
        await runner.start()
        engine.shutdown = hang

        assert await runner.stop() is False
        events.error.assert_called_once_with(message="shutdown timed out", detail="0.01s")


# ---------------------------------------------------------------------------
# BotManager
# ---------------------------------------------------------------------------


def _config():
    return build_config({
        "execution": {"fill_wait_s": 0, "position_fraction": 0.5},
        "scheduler": {"tick_interval_s": 10, "shutdown_timeout_s": 1},
        "bots": [
            {"name": "trend", "strategy": "ema_crossover", "budget": 500},
            {"name": "reversion", "strategy": "mean_reversion", "budget": 500, "params": {"oversold": 25}},
        ],
    })


class TestManager:
    @pytest.mark.asyncio
    async def test_bots_are_isolated(self) -> None:
        ports: list[SimulatedExchange] = []

        def factory(bot):
            port = SimulatedExchange(price=100.0)
            ports.append(port)
            return port

        manager = BotManager(_config(), await _ready_feed(), factory)
        await manager.start_all()

        assert sorted(manager.runners) == ["reversion", "trend"]
        assert len(ports) == 2
        trend = manager.runners["trend"].engine
        reversion = manager.runners["reversion"].engine
        assert trend.ledger is not reversion.ledger
        assert trend.risk is not reversion.risk
        assert manager.runners["reversion"].strategy.oversold == 25
        assert set(manager.all_stats()) == {"trend", "reversion"}

        await manager.stop_all()
        assert all(not p.connected for p in ports)

    @pytest.mark.asyncio
    async def test_restart_builds_fresh_engine_on_same_port(self) -> None:
        calls = []

        def factory(bot):
            calls.append(bot.name)
            return SimulatedExchange(price=100.0)

        manager = BotManager(_config(), await _ready_feed(), factory)
        first = await manager.start_bot("trend")
        first.engine.risk.trip("manual")
        assert manager.stats("trend").state is RiskState.EMERGENCY_STOPPED

        second = await manager.restart_bot("trend")
        assert second is not first
        assert second.engine.state is RiskState.ACTIVE
        assert calls == ["trend"]
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_unknown_bot(self) -> None:
        manager = BotManager(_config(), await _ready_feed(), lambda bot: SimulatedExchange(price=100.0))
        with pytest.raises(KeyError, match="unknown bot"):
            await manager.start_bot("ghost")
        with pytest.raises(KeyError):
            manager.stats("trend")
        assert await manager.stop_bot("trend") is True
