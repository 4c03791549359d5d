"""Tests for config loader: YAML parsing, schema validation, env var resolution, error cases."""

from pathlib import Path

import pytest

from config import AppConfig, ConfigError, build_config, load_config

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("TRADING_MODE", "EXCHANGE_API_KEY", "EXCHANGE_API_SECRET"):
        monkeypatch.delenv(var, raising=False)


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return path


def test_repo_config_loads() -> None:
    cfg = load_config(REPO_CONFIG)
    assert isinstance(cfg, AppConfig)
    assert cfg.mode == "paper"
    assert cfg.symbol == "BTC/USDT"
    assert [b.name for b in cfg.bots] == ["trend", "reversion"]
    assert cfg.bot("reversion").params == {"oversold": 30, "overbought": 70}


def test_minimal_config_uses_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, "timeframe: 5m\n"))
    assert cfg.timeframe == "5m"
    assert cfg.exchange.id == "binance"
    assert cfg.exchange.base == "BTC"
    assert cfg.exchange.quote == "USDT"
    assert cfg.risk.max_drawdown == 0.15
    assert cfg.execution.position_fraction == 0.08
    assert cfg.backtest.max_drawdown is None
    assert cfg.bots == ()


def test_empty_file_is_all_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, ""))
    assert cfg.mode == "paper"
    assert cfg.timeframe == "1m"


def test_bot_lookup_unknown(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, "bots: []\n"))
    with pytest.raises(KeyError):
        cfg.bot("missing")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def test_credentials_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXCHANGE_API_KEY", "key-123")
    monkeypatch.setenv("EXCHANGE_API_SECRET", "secret-456")
    cfg = load_config(_write(tmp_path, "mode: live\n"))
    assert cfg.exchange.api_key == "key-123"
    assert cfg.exchange.api_secret == "secret-456"


def test_trading_mode_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRADING_MODE", "LIVE")
    assert load_config(_write(tmp_path, "mode: paper\n")).mode == "live"


def test_invalid_trading_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRADING_MODE", "yolo")
    with pytest.raises(ConfigError, match="TRADING_MODE"):
        build_config({})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not valid YAML"):
        load_config(_write(tmp_path, "bots: [unclosed\n"))


def test_non_mapping(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="mapping"):
        load_config(_write(tmp_path, "- a\n- b\n"))


@pytest.mark.parametrize("content, where", [
    ("risk:\n  max_drawdown: 1.5\n", "risk/max_drawdown"),
    ("risk:\n  capital_mode: shared\n", "risk/capital_mode"),
    ("exchange:\n  symbol: btcusdt\n", "exchange/symbol"),
    ("timeframe: 1x\n", "timeframe"),
    ("bots:\n  - name: a\n    strategy: ema_crossover\n", "bots/0"),
    ("bots:\n  - name: a\n    strategy: ema_crossover\n    budget: -5\n", "bots/0/budget"),
    ("unknown_section: 1\n", "<root>"),
])
def test_schema_violations(tmp_path: Path, content: str, where: str) -> None:
    with pytest.raises(ConfigError, match=f"at {where}"):
        load_config(_write(tmp_path, content))


def test_duplicate_bot_names(tmp_path: Path) -> None:
    content = (
        "bots:\n"
        "  - {name: a, strategy: ema_crossover, budget: 100}\n"
        "  - {name: a, strategy: mean_reversion, budget: 100}\n"
    )
    with pytest.raises(ConfigError, match="Duplicate bot name"):
        load_config(_write(tmp_path, content))


def test_exclusive_mode_allows_single_bot(tmp_path: Path) -> None:
    bots = (
        "bots:\n"
        "  - {name: a, strategy: ema_crossover, budget: 100}\n"
        "  - {name: b, strategy: mean_reversion, budget: 100}\n"
    )
    with pytest.raises(ConfigError, match="single bot"):
        load_config(_write(tmp_path, "risk:\n  capital_mode: exclusive\n" + bots))

    single = "risk:\n  capital_mode: exclusive\nbots:\n  - {name: a, strategy: ema_crossover, budget: 100}\n"
    assert load_config(_write(tmp_path, single)).risk.capital_mode == "exclusive"
    assert len(load_config(_write(tmp_path, "risk:\n  capital_mode: isolated\n" + bots)).bots) == 2


def test_config_is_frozen(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, ""))
    with pytest.raises(AttributeError):
        cfg.mode = "live"  # type: ignore[misc]
