"""
Bot manager: owns the runners of one `trader run` invocation.

Runners live in an explicit dict keyed by bot name. Each bot gets its own
port, ledger and risk controller; the market feed is shared and read-only.
"""

from __future__ import annotations

import logging
from typing import Callable

from cli.scheduler import BotRunner
from cli.structured_log import StructuredEventLogger
from config.loader import AppConfig, BotConfig
from data.feed import PollingMarketFeed
from execution.port import ExecutionPort
from journal.writer import JournalWriter
from strategies import get_strategy
from trade_core.engine import EngineStats, ExecutionEngine
from trade_core.ledger import PositionLedger
from trade_core.risk_controller import RiskController
from trade_core.safety import SafetyGuard
from trade_core.slippage import SlippageTracker

logger = logging.getLogger("trader.manager")

PortFactory = Callable[[BotConfig], ExecutionPort]


def build_engine(
    cfg: AppConfig,
    bot: BotConfig,
    port: ExecutionPort,
    *,
    events: StructuredEventLogger | None = None,
    journal: JournalWriter | None = None,
) -> ExecutionEngine:
    """Wire a fresh engine for *bot* from config."""
    ex = cfg.execution
    risk = RiskController(
        bot.budget,
        max_drawdown=cfg.risk.max_drawdown,
        capital_mode=cfg.risk.capital_mode,
        isolation_threshold=cfg.risk.isolation_threshold,
        balance_check_interval_s=cfg.risk.balance_check_interval_s,
        balance_epsilon=cfg.risk.balance_epsilon,
    )
    safety = SafetyGuard(
        kill_switch=ex.kill_switch,
        max_daily_loss_pct=ex.max_daily_loss_pct,
        budget=bot.budget,
        max_trades_per_day=ex.max_trades_per_day,
    )
    return ExecutionEngine(
        bot.name,
        port,
        ledger=PositionLedger(ex.fee_rate),
        risk=risk,
        safety=safety,
        slippage=SlippageTracker(warning_threshold=ex.slippage_warning),
        position_fraction=ex.position_fraction,
        fill_wait_s=ex.fill_wait_s,
        events=events,
        journal=journal,
    )


class BotManager:
    """Start, stop and restart the configured bots."""

    def __init__(
        self,
        cfg: AppConfig,
        feed: PollingMarketFeed,
        port_factory: PortFactory,
        *,
        events: StructuredEventLogger | None = None,
        journal: JournalWriter | None = None,
    ) -> None:
        self._cfg = cfg
        self._feed = feed
        self._port_factory = port_factory
        self._events = events
        self._journal = journal
        self._runners: dict[str, BotRunner] = {}
        self._ports: dict[str, ExecutionPort] = {}

    @property
    def names(self) -> list[str]:
        return [b.name for b in self._cfg.bots]

    @property
    def runners(self) -> dict[str, BotRunner]:
        return dict(self._runners)

    def _bot(self, name: str) -> BotConfig:
        try:
            return self._cfg.bot(name)
        except KeyError:
            raise KeyError(f"unknown bot {name!r} (configured: {', '.join(self.names)})") from None

    def _build_runner(self, bot: BotConfig) -> BotRunner:
        port = self._ports.get(bot.name)
        if port is None:
            port = self._port_factory(bot)
            self._ports[bot.name] = port
        events = self._events.for_bot(bot.name) if self._events is not None else None
        engine = build_engine(self._cfg, bot, port, events=events, journal=self._journal)
        strategy = get_strategy(bot.strategy, **bot.params)
        return BotRunner(
            bot.name,
            engine,
            strategy,
            self._feed,
            tick_interval_s=self._cfg.scheduler.tick_interval_s,
            shutdown_timeout_s=self._cfg.scheduler.shutdown_timeout_s,
            events=events,
        )

    async def start_bot(self, name: str) -> BotRunner:
        runner = self._runners.get(name)
        if runner is not None and runner.running:
            return runner
        runner = self._build_runner(self._bot(name))
        self._runners[name] = runner
        await runner.start()
        return runner

    async def stop_bot(self, name: str) -> bool:
        runner = self._runners.get(name)
        if runner is None:
            return True
        return await runner.stop()

    async def restart_bot(self, name: str) -> BotRunner:
        """Stop the bot and start it with a fresh engine (clears an emergency stop)."""
        await self.stop_bot(name)
        self._runners.pop(name, None)
        logger.info("Restarting bot %s with a fresh engine", name)
        return await self.start_bot(name)

    async def start_all(self) -> None:
        for name in self.names:
            await self.start_bot(name)

    async def stop_all(self) -> None:
        for name in list(self._runners):
            await self.stop_bot(name)
        for name, port in list(self._ports.items()):
            await port.close()
            del self._ports[name]

    def stats(self, name: str) -> EngineStats:
        runner = self._runners.get(name)
        if runner is None:
            raise KeyError(f"bot {name!r} is not running")
        return runner.stats()

    def all_stats(self) -> dict[str, EngineStats]:
        return {name: runner.stats() for name, runner in self._runners.items()}
