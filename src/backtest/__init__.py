"""
Historical simulator: replay candles through a strategy with the same
ledger, fee and drawdown logic as the live engine.
"""

from backtest.simulator import SimulationResult, run_simulation, validate_series

__all__ = ["SimulationResult", "run_simulation", "validate_series"]
