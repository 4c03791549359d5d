"""
Simulated exchange: deterministic, network-free execution port.

Fills market orders instantly at the current simulated price, charges the
fee in quote currency, and keeps resident stop orders that trigger when a
price update crosses them. Order ids are sequential ("sim-1", "sim-2", ...).

The price comes from one of:
  - set_price() calls (tests),
  - a pre-loaded candle series stepped with advance() (replay),
  - a price_source callable polled on every call (paper trading on a live feed).
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Callable, Sequence

from execution.port import (
    ORDER_CANCELLED,
    ORDER_CLOSED,
    ORDER_OPEN,
    Balance,
    ExchangeError,
    InsufficientFundsError,
    OrderNotFoundError,
    OrderResult,
    Ticker,
    UnsupportedOrderError,
)
from trade_core.contracts import Candle

logger = logging.getLogger("trader.exchange.sim")

FILL_IMMEDIATE = "immediate"
FILL_DELAYED = "delayed"  # pending on submit, filled at the first fetch_order
FILL_NEVER = "never"      # pending forever
FILL_PARTIAL = "partial"  # part filled on submit, the rest resting until cancelled


class SimulatedExchange:
    """In-memory ExecutionPort for one base/quote pair.

    Parameters
    ----------
    symbol:
        Pair in "BASE/QUOTE" form.
    quote_balance, base_balance:
        Starting holdings.
    price:
        Initial price; required before trading unless a series or price_source is set.
    fee_rate:
        Fee per side as a fraction of notional, charged in quote.
    amount_precision:
        Decimal places for order amounts.
    min_amount:
        Smallest accepted order amount.
    supports_stops:
        When False, place_protective_stop raises UnsupportedOrderError.
    fill_mode:
        FILL_IMMEDIATE, FILL_DELAYED, FILL_NEVER or FILL_PARTIAL for market orders.
    partial_fill_share:
        Share of the amount filled on submit in FILL_PARTIAL mode.
    price_source:
        Optional callable returning the latest price (None when unknown).
    """

    def __init__(
        self,
        symbol: str = "BTC/USDT",
        *,
        quote_balance: float = 10_000.0,
        base_balance: float = 0.0,
        price: float | None = None,
        fee_rate: float = 0.001,
        amount_precision: int = 6,
        min_amount: float = 0.00001,
        supports_stops: bool = True,
        fill_mode: str = FILL_IMMEDIATE,
        partial_fill_share: float = 0.5,
        price_source: Callable[[], float | None] | None = None,
    ) -> None:
        self.symbol = symbol
        self._quote = quote_balance
        self._base = base_balance
        self._price = price
        self._fee_rate = fee_rate
        self._precision = amount_precision
        self._min_amount = min_amount
        self.supports_stops = supports_stops
        self.fill_mode = fill_mode
        self.partial_fill_share = partial_fill_share
        self._price_source = price_source
        self._orders: dict[str, OrderResult] = {}
        self._next_id = 1
        self._series: list[Candle] = []
        self._cursor = -1
        self._failures: dict[str, ExchangeError] = {}
        self.connected = False

    # -- test and replay controls ------------------------------------------

    @property
    def price(self) -> float | None:
        return self._price

    def set_price(self, price: float) -> list[OrderResult]:
        """Move the market. Returns resident stops triggered by the move."""
        self._price = price
        return self._trigger_stops(price)

    def load_series(self, candles: Sequence[Candle]) -> None:
        self._series = list(candles)
        self._cursor = -1

    def advance(self) -> Candle | None:
        """Step to the next candle of the loaded series and trade at its close."""
        if self._cursor + 1 >= len(self._series):
            return None
        self._cursor += 1
        candle = self._series[self._cursor]
        self.set_price(candle.close)
        return candle

    def fail_next(self, method: str, exc: ExchangeError) -> None:
        """Make the next call to *method* raise *exc* (one shot)."""
        self._failures[method] = exc

    def add_resident_stop(self, amount: float, stop_price: float) -> OrderResult:
        """Seed a stop order as if left behind by an earlier session."""
        order = self._new_order("sell", amount, ORDER_OPEN, order_type="stop", stop_price=stop_price)
        return order

    # -- ExecutionPort -------------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def fetch_balance(self) -> Balance:
        self._before("fetch_balance")
        reserved = sum(o.amount for o in self._orders.values() if o.status == ORDER_OPEN and o.is_protective)
        return Balance(
            quote_free=self._quote,
            quote_total=self._quote,
            base_free=max(0.0, self._base - reserved),
            base_total=self._base,
        )

    async def fetch_ticker(self) -> Ticker:
        self._before("fetch_ticker")
        return Ticker(symbol=self.symbol, last=self._current_price())

    async def create_market_order(self, side: str, amount: float) -> OrderResult:
        self._before("create_market_order")
        if side not in ("buy", "sell"):
            raise ExchangeError(f"invalid side {side!r}")
        if amount < self._min_amount:
            raise ExchangeError(f"amount {amount} below minimum {self._min_amount}")
        price = self._current_price()
        self._check_funds(side, amount, price)

        if self.fill_mode == FILL_IMMEDIATE:
            self._settle(side, amount, price)
            return self._new_order(side, amount, ORDER_CLOSED, filled=amount, average=price)
        if self.fill_mode == FILL_PARTIAL:
            filled = self.amount_to_precision(amount * self.partial_fill_share)
            self._settle(side, filled, price)
            return self._new_order(side, amount, ORDER_OPEN, filled=filled, average=price)
        return self._new_order(side, amount, ORDER_OPEN)

    async def place_protective_stop(self, amount: float, stop_price: float) -> OrderResult:
        self._before("place_protective_stop")
        if not self.supports_stops:
            raise UnsupportedOrderError("stop orders are not supported on this market")
        if amount > self._base + 1e-12:
            raise InsufficientFundsError(f"stop amount {amount} exceeds base balance {self._base}")
        return self._new_order("sell", amount, ORDER_OPEN, order_type="stop", stop_price=stop_price)

    async def cancel_order(self, order_id: str) -> None:
        self._before("cancel_order")
        order = self._orders.get(order_id)
        if order is None or order.status != ORDER_OPEN:
            raise OrderNotFoundError(f"order {order_id} is not open")
        self._orders[order_id] = replace(order, status=ORDER_CANCELLED)

    async def fetch_order(self, order_id: str) -> OrderResult:
        self._before("fetch_order")
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"order {order_id} not found")
        if order.status == ORDER_OPEN and order.order_type == "market" and self.fill_mode == FILL_DELAYED:
            price = self._current_price()
            self._settle(order.side, order.amount, price)
            order = replace(order, status=ORDER_CLOSED, filled=order.amount, average=price)
            self._orders[order_id] = order
        return order

    async def fetch_open_orders(self) -> list[OrderResult]:
        self._before("fetch_open_orders")
        return [o for o in self._orders.values() if o.status == ORDER_OPEN]

    def amount_to_precision(self, amount: float) -> float:
        factor = 10 ** self._precision
        return math.floor(amount * factor + 1e-9) / factor

    @property
    def min_order_amount(self) -> float:
        return self._min_amount

    # -- internals ----------------------------------------------------------

    def _before(self, method: str) -> None:
        exc = self._failures.pop(method, None)
        if exc is not None:
            raise exc
        if self._price_source is not None:
            latest = self._price_source()
            if latest:
                self.set_price(latest)

    def _current_price(self) -> float:
        if self._price is None:
            raise ExchangeError(f"no price available for {self.symbol}")
        return self._price

    def _check_funds(self, side: str, amount: float, price: float) -> None:
        if side == "buy":
            cost = amount * price * (1 + self._fee_rate)
            if cost > self._quote + 1e-9:
                raise InsufficientFundsError(f"need {cost:.4f} quote, have {self._quote:.4f}")
        elif amount > self._base + 1e-12:
            raise InsufficientFundsError(f"need {amount} base, have {self._base}")

    def _settle(self, side: str, amount: float, price: float) -> None:
        notional = amount * price
        fee = notional * self._fee_rate
        if side == "buy":
            self._quote -= notional + fee
            self._base += amount
        else:
            self._base -= amount
            self._quote += notional - fee

    def _trigger_stops(self, price: float) -> list[OrderResult]:
        triggered: list[OrderResult] = []
        for order_id, order in list(self._orders.items()):
            if order.status != ORDER_OPEN or not order.is_protective:
                continue
            if price > order.stop_price:
                continue
            amount = min(order.amount, self._base)
            self._settle("sell", amount, order.stop_price)
            filled = replace(order, status=ORDER_CLOSED, filled=amount, average=order.stop_price)
            self._orders[order_id] = filled
            triggered.append(filled)
            logger.info("Stop %s triggered at %.8f (stop %.8f)", order_id, price, order.stop_price)
        return triggered

    def _new_order(
        self,
        side: str,
        amount: float,
        status: str,
        *,
        filled: float = 0.0,
        average: float | None = None,
        order_type: str = "market",
        stop_price: float | None = None,
    ) -> OrderResult:
        order_id = f"sim-{self._next_id}"
        self._next_id += 1
        order = OrderResult(
            id=order_id,
            side=side,
            amount=amount,
            status=status,
            filled=filled,
            average=average,
            order_type=order_type,
            stop_price=stop_price,
        )
        self._orders[order_id] = order
        return order
