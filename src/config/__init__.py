"""
Configuration: reads config.yaml, validates it against config.schema.json,
resolves secrets from the environment.
"""

from config.loader import (
    AlertingConfig,
    AppConfig,
    BacktestConfig,
    BotConfig,
    ConfigError,
    DataConfig,
    ExchangeConfig,
    ExecutionConfig,
    JournalConfig,
    PaperConfig,
    RiskConfig,
    SchedulerConfig,
    build_config,
    load_config,
)

__all__ = [
    "AlertingConfig",
    "AppConfig",
    "BacktestConfig",
    "BotConfig",
    "ConfigError",
    "DataConfig",
    "ExchangeConfig",
    "ExecutionConfig",
    "JournalConfig",
    "PaperConfig",
    "RiskConfig",
    "SchedulerConfig",
    "build_config",
    "load_config",
]
