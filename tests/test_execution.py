"""Tests for the execution ports: simulated exchange and the ccxt adapter (mocked client)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from conftest import make_candles
from execution.ccxt_exchange import CcxtExchange, parse_order, translate_error
from execution.port import (
    ORDER_CANCELLED,
    ORDER_CLOSED,
    ORDER_OPEN,
    ExchangeError,
    ExchangeTimeoutError,
    ExecutionPort,
    InsufficientFundsError,
    OrderNotFoundError,
    UnsupportedOrderError,
)
from execution.simulated import FILL_DELAYED, FILL_PARTIAL, SimulatedExchange


# ---------------------------------------------------------------------------
# SimulatedExchange
# ---------------------------------------------------------------------------


class TestSimulatedExchange:
    def test_satisfies_port_protocol(self, exchange: SimulatedExchange) -> None:
        assert isinstance(exchange, ExecutionPort)

    @pytest.mark.asyncio
    async def test_market_buy_settles_with_fee(self, exchange: SimulatedExchange) -> None:
        order = await exchange.create_market_order("buy", 2.0)
        assert order.id == "sim-1"
        assert order.is_filled
        assert order.average == 100.0
        balance = await exchange.fetch_balance()
        assert balance.base_total == 2.0
        assert balance.quote_total == pytest.approx(10_000.0 - 200.0 - 0.2)

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, exchange: SimulatedExchange) -> None:
        with pytest.raises(InsufficientFundsError):
            await exchange.create_market_order("buy", 1_000.0)
        with pytest.raises(InsufficientFundsError):
            await exchange.create_market_order("sell", 1.0)

    @pytest.mark.asyncio
    async def test_stop_reserves_base_and_triggers(self, exchange: SimulatedExchange) -> None:
        await exchange.create_market_order("buy", 2.0)
        stop = await exchange.place_protective_stop(2.0, 95.0)
        assert stop.is_protective
        assert (await exchange.fetch_balance()).base_free == 0.0

        assert exchange.set_price(96.0) == []
        triggered = exchange.set_price(94.0)
        assert [o.id for o in triggered] == [stop.id]
        filled = await exchange.fetch_order(stop.id)
        assert filled.status == ORDER_CLOSED
        assert filled.average == 95.0
        assert (await exchange.fetch_balance()).base_total == 0.0

    @pytest.mark.asyncio
    async def test_stops_unsupported(self) -> None:
        port = SimulatedExchange(price=100.0, base_balance=1.0, supports_stops=False)
        with pytest.raises(UnsupportedOrderError):
            await port.place_protective_stop(1.0, 90.0)

    @pytest.mark.asyncio
    async def test_cancel_twice_raises_not_found(self, exchange: SimulatedExchange) -> None:
        order = exchange.add_resident_stop(1.0, 90.0)
        await exchange.cancel_order(order.id)
        assert (await exchange.fetch_order(order.id)).status == ORDER_CANCELLED
        with pytest.raises(OrderNotFoundError):
            await exchange.cancel_order(order.id)

    @pytest.mark.asyncio
    async def test_delayed_fill_on_poll(self, exchange: SimulatedExchange) -> None:
        exchange.fill_mode = FILL_DELAYED
        order = await exchange.create_market_order("buy", 1.0)
        assert order.status == ORDER_OPEN
        assert (await exchange.fetch_balance()).base_total == 0.0
        polled = await exchange.fetch_order(order.id)
        assert polled.is_filled

    @pytest.mark.asyncio
    async def test_partial_fill_keeps_filled_after_cancel(self, exchange: SimulatedExchange) -> None:
        exchange.fill_mode = FILL_PARTIAL
        exchange.partial_fill_share = 0.4
        order = await exchange.create_market_order("buy", 5.0)
        assert order.status == ORDER_OPEN
        assert order.filled == pytest.approx(2.0)
        assert (await exchange.fetch_balance()).base_total == pytest.approx(2.0)

        await exchange.cancel_order(order.id)
        cancelled = await exchange.fetch_order(order.id)
        assert cancelled.status == ORDER_CANCELLED
        assert cancelled.filled == pytest.approx(2.0)
        assert not cancelled.is_filled

    @pytest.mark.asyncio
    async def test_fail_next_is_one_shot(self, exchange: SimulatedExchange) -> None:
        exchange.fail_next("fetch_ticker", ExchangeError("boom"))
        with pytest.raises(ExchangeError):
            await exchange.fetch_ticker()
        assert (await exchange.fetch_ticker()).last == 100.0

    @pytest.mark.asyncio
    async def test_series_replay(self) -> None:
        port = SimulatedExchange()
        port.load_series(make_candles([100.0, 101.0, 102.0]))
        with pytest.raises(ExchangeError):
            await port.fetch_ticker()
        assert port.advance().close == 100.0
        assert port.advance().close == 101.0
        assert (await port.fetch_ticker()).last == 101.0
        port.advance()
        assert port.advance() is None

    @pytest.mark.asyncio
    async def test_price_source_polled(self) -> None:
        prices = iter([100.0, 105.0])
        port = SimulatedExchange(price_source=lambda: next(prices))
        assert (await port.fetch_ticker()).last == 100.0
        assert (await port.fetch_ticker()).last == 105.0

    def test_amount_precision_floors(self, exchange: SimulatedExchange) -> None:
        assert exchange.amount_to_precision(1.23456789) == 1.234567
        assert exchange.min_order_amount == 0.00001


# ---------------------------------------------------------------------------
# ccxt adapter
# ---------------------------------------------------------------------------


def _client() -> MagicMock:
    client = MagicMock()
    client.id = "binance"
    client.load_markets = AsyncMock(return_value={})
    client.market.return_value = {"symbol": "BTC/USDT", "limits": {"amount": {"min": 0.0001}}}
    client.fetch_balance = AsyncMock(return_value={
        "USDT": {"free": 900.0, "total": 1_000.0},
        "BTC": {"free": 0.5, "total": 0.5},
    })
    client.fetch_ticker = AsyncMock(return_value={"last": 100.5, "timestamp": 1_704_153_600_000})
    client.create_order = AsyncMock()
    client.cancel_order = AsyncMock(return_value={})
    client.fetch_order = AsyncMock()
    client.fetch_open_orders = AsyncMock(return_value=[])
    client.close = AsyncMock()
    client.price_to_precision.side_effect = lambda symbol, price: f"{price:.2f}"
    client.amount_to_precision.side_effect = lambda symbol, amount: f"{amount:.4f}"
    return client


class TestCcxtExchange:
    @pytest.mark.asyncio
    async def test_connect_loads_market_once(self) -> None:
        client = _client()
        port = CcxtExchange("binance", "BTC/USDT", client=client)
        assert port.min_order_amount == 0.0
        await port.connect()
        await port.connect()
        client.load_markets.assert_awaited_once()
        assert port.min_order_amount == 0.0001

    @pytest.mark.asyncio
    async def test_balance_and_ticker(self) -> None:
        port = CcxtExchange("binance", "BTC/USDT", client=_client())
        balance = await port.fetch_balance()
        assert (balance.quote_free, balance.quote_total) == (900.0, 1_000.0)
        assert balance.base_total == 0.5
        ticker = await port.fetch_ticker()
        assert ticker.last == 100.5
        assert ticker.timestamp.year == 2024

    @pytest.mark.asyncio
    async def test_ticker_without_last_price(self) -> None:
        client = _client()
        client.fetch_ticker.return_value = {"last": None}
        with pytest.raises(ExchangeError):
            await CcxtExchange("binance", "BTC/USDT", client=client).fetch_ticker()

    @pytest.mark.asyncio
    async def test_market_order_parsed(self) -> None:
        client = _client()
        client.create_order.return_value = {
            "id": 123, "side": "buy", "amount": 0.5, "status": "closed",
            "filled": 0.5, "average": 100.2, "type": "market",
        }
        order = await CcxtExchange("binance", "BTC/USDT", client=client).create_market_order("buy", 0.5)
        client.create_order.assert_awaited_once_with("BTC/USDT", "market", "buy", 0.5)
        assert order.id == "123"
        assert order.is_filled
        assert order.average == 100.2

    @pytest.mark.asyncio
    async def test_protective_stop_is_stop_limit(self) -> None:
        client = _client()
        client.create_order.return_value = {"id": "s1", "side": "sell", "amount": 0.5, "status": "open"}
        order = await CcxtExchange("binance", "BTC/USDT", client=client).place_protective_stop(0.5, 95.0)
        client.create_order.assert_awaited_once_with(
            "BTC/USDT", "STOP_LOSS_LIMIT", "sell", 0.5, 94.05, {"stopPrice": 95.0, "timeInForce": "GTC"},
        )
        assert order.is_protective
        assert order.stop_price == 95.0
        assert order.order_type == "stop"

    @pytest.mark.asyncio
    async def test_ccxt_errors_translated(self) -> None:
        client = _client()
        client.cancel_order.side_effect = ccxt.OrderNotFound("unknown order")
        client.create_order.side_effect = ccxt.InsufficientFunds("no money")
        port = CcxtExchange("binance", "BTC/USDT", client=client)
        with pytest.raises(OrderNotFoundError):
            await port.cancel_order("x")
        with pytest.raises(InsufficientFundsError):
            await port.create_market_order("buy", 1.0)

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self) -> None:
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        client = _client()
        client.fetch_ticker = slow
        port = CcxtExchange("binance", "BTC/USDT", timeout_s=0.01, client=client)
        with pytest.raises(ExchangeTimeoutError):
            await port.fetch_ticker()

    def test_amount_rounding_to_zero(self) -> None:
        client = _client()
        client.amount_to_precision.side_effect = ccxt.InvalidOrder("amount must be greater than minimum")
        assert CcxtExchange("binance", "BTC/USDT", client=client).amount_to_precision(1e-9) == 0.0


class TestTranslateError:
    @pytest.mark.parametrize("exc, expected", [
        (asyncio.TimeoutError(), ExchangeTimeoutError),
        (ccxt.RequestTimeout("slow"), ExchangeTimeoutError),
        (ccxt.OrderNotFound("gone"), OrderNotFoundError),
        (ccxt.InsufficientFunds("poor"), InsufficientFundsError),
        (ccxt.NotSupported("nope"), UnsupportedOrderError),
        (ccxt.InvalidOrder("bad"), UnsupportedOrderError),
    ])
    def test_mapping(self, exc, expected) -> None:
        assert isinstance(translate_error(exc), expected)

    def test_generic_error_keeps_type_name(self) -> None:
        err = translate_error(ccxt.NetworkError("reset by peer"))
        assert type(err) is ExchangeError
        assert "NetworkError" in str(err)


def test_parse_order_statuses() -> None:
    raw = {
        "id": "9", "side": "sell", "amount": 1.0, "status": "canceled", "filled": 0.0,
        "type": "STOP_LOSS_LIMIT", "stopPrice": "90", "timestamp": 1_704_153_600_000,
    }
    order = parse_order(raw)
    assert order.status == ORDER_CANCELLED
    assert order.stop_price == 90.0
    assert order.order_type == "stop_loss_limit"
    assert order.average is None
    assert order.timestamp is not None
