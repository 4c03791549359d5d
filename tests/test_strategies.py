"""Tests for the strategy registry, the indicator helpers and both reference strategies."""

import pytest

from conftest import make_candles
from strategies import STRATEGIES, EmaCrossoverStrategy, MeanReversionStrategy, SignalSource, get_strategy
from strategies import indicators as ind
from trade_core.contracts import SignalAction


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_known_names(self) -> None:
        assert set(STRATEGIES) == {"ema_crossover", "mean_reversion"}

    def test_params_forwarded(self) -> None:
        strategy = get_strategy("mean_reversion", oversold=25, overbought=75)
        assert isinstance(strategy, MeanReversionStrategy)
        assert (strategy.oversold, strategy.overbought) == (25, 75)

    def test_unknown_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown strategy 'grid'"):
            get_strategy("grid")

    def test_unknown_param(self) -> None:
        with pytest.raises(TypeError):
            get_strategy("ema_crossover", nonsense=1)

    @pytest.mark.parametrize("name", sorted(STRATEGIES))
    def test_satisfies_protocol(self, name: str) -> None:
        assert isinstance(get_strategy(name), SignalSource)


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


class TestIndicators:
    def test_sma_and_ema_need_full_window(self) -> None:
        assert ind.sma([1.0, 2.0], 3) is None
        assert ind.sma([1.0, 2.0, 3.0], 3) == 2.0
        assert ind.ema_series([1.0, 2.0, 3.0], 3) == [None, None, 2.0]

    def test_rsi_extremes(self) -> None:
        rising = [float(i) for i in range(20)]
        assert ind.rsi(rising, 14) == 100.0
        assert ind.rsi(list(reversed(rising)), 14) == 0.0
        assert ind.rsi(rising[:10], 14) is None

    def test_bollinger_flat_series_has_zero_width(self) -> None:
        assert ind.bollinger([100.0] * 20, 20) == (100.0, 100.0, 100.0)

    def test_atr_and_volume_ratio(self) -> None:
        candles = make_candles([100.0] * 21, volume=10.0)
        assert ind.atr(candles, 14) == pytest.approx(100.1 - 99.9)
        assert ind.volume_ratio(candles, 20) == pytest.approx(1.0)


# ---------------------------------------------------------------------------
# EMA crossover
# ---------------------------------------------------------------------------


def _v_reversal():
    """40 slow down bars, then a sharp high-volume rally."""
    decline = make_candles([100.0 - 0.2 * i for i in range(40)], volume=10.0)
    rally = make_candles([94.2 + 2.0 * i for i in range(10)], volume=30.0, start=40)
    return decline + rally


class TestEmaCrossover:
    def test_periods_validated(self) -> None:
        with pytest.raises(ValueError):
            EmaCrossoverStrategy(fast_period=21, slow_period=9)

    def test_insufficient_data(self) -> None:
        signal = EmaCrossoverStrategy().analyze(make_candles([100.0] * 10), 100.0)
        assert signal.action is SignalAction.HOLD
        assert signal.reason == "insufficient data"

    def test_flat_market_is_ranging(self, flat_candles) -> None:
        signal = EmaCrossoverStrategy().analyze(flat_candles, 100.0)
        assert signal.action is SignalAction.HOLD
        assert signal.reason.startswith("ranging")

    def test_cross_up_on_reversal(self) -> None:
        strategy = EmaCrossoverStrategy()
        candles = _v_reversal()
        buys = []
        for n in range(strategy.required_candles, len(candles) + 1):
            window = candles[:n]
            signal = strategy.analyze(window, window[-1].close)
            if signal.action is SignalAction.BUY:
                buys.append(signal)
        assert len(buys) == 1
        buy = buys[0]
        assert buy.stop_loss < buy.price < buy.take_profit
        assert buy.reason.startswith("EMA cross up")


# ---------------------------------------------------------------------------
# Mean reversion
# ---------------------------------------------------------------------------


def _dip():
    return make_candles([100.0] * 19 + [85.0])


class TestMeanReversion:
    def test_lower_band_touch_buys(self) -> None:
        strategy = MeanReversionStrategy()
        signal = strategy.analyze(_dip(), 85.0)
        assert signal.action is SignalAction.BUY
        assert signal.stop_loss == pytest.approx(85.0 * 0.98)
        assert signal.take_profit == pytest.approx(85.0 * 1.05)
        assert strategy.in_position is True

    def test_stop_loss_exit_after_entry(self) -> None:
        strategy = MeanReversionStrategy()
        strategy.analyze(_dip(), 85.0)
        signal = strategy.analyze(_dip(), 80.0)
        assert signal.action is SignalAction.CLOSE
        assert signal.reason.startswith("stop loss")
        assert strategy.in_position is False

    def test_no_entry_while_believing_in_position(self) -> None:
        strategy = MeanReversionStrategy()
        strategy.restore_position(90.0, 85.0)
        signal = strategy.analyze(_dip(), 89.0)
        assert signal.action is SignalAction.HOLD
        assert signal.reason.startswith("in position")

    def test_clear_position_allows_new_entry(self) -> None:
        strategy = MeanReversionStrategy()
        strategy.analyze(_dip(), 85.0)
        strategy.clear_position()
        assert strategy.entry_price is None
        assert strategy.analyze(_dip(), 85.0).action is SignalAction.BUY

    def test_quiet_market_holds(self, flat_candles) -> None:
        signal = MeanReversionStrategy().analyze(flat_candles, 100.0)
        assert signal.action is SignalAction.HOLD
