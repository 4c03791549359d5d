"""
Config loader: YAML file -> JSON Schema validation -> frozen dataclass tree.

Exchange credentials are resolved from environment variables
(EXCHANGE_API_KEY, EXCHANGE_API_SECRET); the config file holds only
non-secret values. TRADING_MODE, when set, overrides ``mode``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

logger = logging.getLogger("trader.config")

SCHEMA_PATH = Path(__file__).with_name("config.schema.json")


class ConfigError(ValueError):
    """Config file missing, unparseable, or failing validation."""


# ---------------------------------------------------------------------------
# Frozen dataclass tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExchangeConfig:
    id: str = "binance"
    symbol: str = "BTC/USDT"
    sandbox: bool = True
    timeout_s: float = 10.0
    api_key: str = ""
    api_secret: str = ""

    @property
    def base(self) -> str:
        return self.symbol.split("/")[0]

    @property
    def quote(self) -> str:
        return self.symbol.split("/")[1]


@dataclass(frozen=True)
class RiskConfig:
    max_drawdown: float = 0.15
    capital_mode: str = "auto"
    isolation_threshold: float = 0.5
    balance_check_interval_s: float = 600.0
    balance_epsilon: float = 0.01


@dataclass(frozen=True)
class ExecutionConfig:
    fee_rate: float = 0.001
    position_fraction: float = 0.08
    slippage_warning: float = 0.001
    fill_wait_s: float = 2.0
    kill_switch: bool = False
    max_daily_loss_pct: float = 3.0
    max_trades_per_day: int = 0


@dataclass(frozen=True)
class SchedulerConfig:
    tick_interval_s: float = 60.0
    shutdown_timeout_s: float = 30.0
    feed_poll_s: float = 15.0
    history: int = 100


@dataclass(frozen=True)
class PaperConfig:
    quote_balance: float = 10_000.0
    base_balance: float = 0.0


@dataclass(frozen=True)
class BotConfig:
    name: str
    strategy: str
    budget: float
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BacktestConfig:
    initial_capital: float = 10_000.0
    fee_rate: float = 0.001
    position_fraction: float = 0.15
    slippage_rate: float = 0.001
    warmup: int = 200
    max_drawdown: float | None = None


@dataclass(frozen=True)
class DataConfig:
    candle_store_path: str = "data/candles.db"


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class AppConfig:
    mode: str
    timeframe: str
    exchange: ExchangeConfig
    risk: RiskConfig
    execution: ExecutionConfig
    scheduler: SchedulerConfig
    paper: PaperConfig
    bots: tuple[BotConfig, ...]
    backtest: BacktestConfig
    data: DataConfig
    journal: JournalConfig
    alerting: AlertingConfig = AlertingConfig()

    @property
    def symbol(self) -> str:
        return self.exchange.symbol

    def bot(self, name: str) -> BotConfig:
        for b in self.bots:
            if b.name == name:
                return b
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Validation and construction
# ---------------------------------------------------------------------------


def _validate_schema(data: dict[str, Any], schema_path: Path = SCHEMA_PATH) -> None:
    """Validate *data* against the JSON Schema at *schema_path*."""
    if not schema_path.exists():
        raise ConfigError(f"Schema file not found: {schema_path}")
    with open(schema_path) as f:
        schema = json.load(f)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ConfigError(f"Config validation failed at {where}: {exc.message}") from exc


def _build_bots(raw: list[dict[str, Any]], capital_mode: str) -> tuple[BotConfig, ...]:
    """Bots share one account; exclusive mode reconciles the whole account, so it allows only one."""
    if capital_mode == "exclusive" and len(raw) > 1:
        raise ConfigError(
            f"capital_mode 'exclusive' allows a single bot per account, got {len(raw)} bots"
        )
    bots: list[BotConfig] = []
    seen: set[str] = set()
    for entry in raw:
        name = entry["name"]
        if name in seen:
            raise ConfigError(f"Duplicate bot name: {name!r}")
        seen.add(name)
        bots.append(BotConfig(
            name=name,
            strategy=entry["strategy"],
            budget=float(entry["budget"]),
            params=dict(entry.get("params") or {}),
        ))
    return tuple(bots)


def build_config(raw: dict[str, Any]) -> AppConfig:
    """Build an AppConfig from an already-parsed mapping (validated first)."""
    _validate_schema(raw)

    mode = os.environ.get("TRADING_MODE", "").strip().lower() or raw.get("mode", "paper")
    if mode not in ("paper", "live"):
        raise ConfigError(f"TRADING_MODE must be 'paper' or 'live', got {mode!r}")

    ex_raw = raw.get("exchange", {})
    exchange = ExchangeConfig(
        id=ex_raw.get("id", "binance"),
        symbol=ex_raw.get("symbol", "BTC/USDT"),
        sandbox=bool(ex_raw.get("sandbox", True)),
        timeout_s=float(ex_raw.get("timeout_s", 10.0)),
        api_key=os.environ.get("EXCHANGE_API_KEY", ""),
        api_secret=os.environ.get("EXCHANGE_API_SECRET", ""),
    )

    r_raw = raw.get("risk", {})
    risk = RiskConfig(
        max_drawdown=float(r_raw.get("max_drawdown", 0.15)),
        capital_mode=r_raw.get("capital_mode", "auto"),
        isolation_threshold=float(r_raw.get("isolation_threshold", 0.5)),
        balance_check_interval_s=float(r_raw.get("balance_check_interval_s", 600)),
        balance_epsilon=float(r_raw.get("balance_epsilon", 0.01)),
    )

    e_raw = raw.get("execution", {})
    execution = ExecutionConfig(
        fee_rate=float(e_raw.get("fee_rate", 0.001)),
        position_fraction=float(e_raw.get("position_fraction", 0.08)),
        slippage_warning=float(e_raw.get("slippage_warning", 0.001)),
        fill_wait_s=float(e_raw.get("fill_wait_s", 2.0)),
        kill_switch=bool(e_raw.get("kill_switch", False)),
        max_daily_loss_pct=float(e_raw.get("max_daily_loss_pct", 3.0)),
        max_trades_per_day=int(e_raw.get("max_trades_per_day", 0)),
    )

    s_raw = raw.get("scheduler", {})
    scheduler = SchedulerConfig(
        tick_interval_s=float(s_raw.get("tick_interval_s", 60)),
        shutdown_timeout_s=float(s_raw.get("shutdown_timeout_s", 30)),
        feed_poll_s=float(s_raw.get("feed_poll_s", 15)),
        history=int(s_raw.get("history", 100)),
    )

    p_raw = raw.get("paper", {})
    paper = PaperConfig(
        quote_balance=float(p_raw.get("quote_balance", 10_000)),
        base_balance=float(p_raw.get("base_balance", 0.0)),
    )

    bt_raw = raw.get("backtest", {})
    bt_dd = bt_raw.get("max_drawdown")
    backtest = BacktestConfig(
        initial_capital=float(bt_raw.get("initial_capital", 10_000)),
        fee_rate=float(bt_raw.get("fee_rate", 0.001)),
        position_fraction=float(bt_raw.get("position_fraction", 0.15)),
        slippage_rate=float(bt_raw.get("slippage_rate", 0.001)),
        warmup=int(bt_raw.get("warmup", 200)),
        max_drawdown=float(bt_dd) if bt_dd is not None else None,
    )

    d_raw = raw.get("data", {})
    data = DataConfig(candle_store_path=d_raw.get("candle_store_path", "data/candles.db"))

    j_raw = raw.get("journal", {})
    journal = JournalConfig(
        path=j_raw.get("path", "data/journal.jsonl"),
        echo_stdout=bool(j_raw.get("echo_stdout", False)),
    )

    a_raw = raw.get("alerting", {})
    alerting = AlertingConfig(
        structured_logs=bool(a_raw.get("structured_logs", True)),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    return AppConfig(
        mode=mode,
        timeframe=raw.get("timeframe", "1m"),
        exchange=exchange,
        risk=risk,
        execution=execution,
        scheduler=scheduler,
        paper=paper,
        bots=_build_bots(raw.get("bots", []), risk.capital_mode),
        backtest=backtest,
        data=data,
        journal=journal,
        alerting=alerting,
    )


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """Load, validate and build configuration from a YAML file.

    Raises
    ------
    ConfigError
        If the file is missing, unparseable, or fails validation.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    cfg = build_config(raw)
    logger.debug("Loaded config from %s (%d bots, mode=%s)", config_path, len(cfg.bots), cfg.mode)
    return cfg
