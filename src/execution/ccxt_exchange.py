"""
Live execution port backed by ccxt's async client (spot markets).

Every exchange call is bounded by asyncio.wait_for and ccxt exceptions are
translated into execution.port errors so the engine never sees ccxt types.
Credentials come from config (EXCHANGE_API_KEY / EXCHANGE_API_SECRET).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable

import ccxt.async_support as ccxt

from execution.port import (
    ORDER_CANCELLED,
    ORDER_CLOSED,
    ORDER_OPEN,
    Balance,
    ExchangeError,
    ExchangeTimeoutError,
    InsufficientFundsError,
    OrderNotFoundError,
    OrderResult,
    Ticker,
    UnsupportedOrderError,
)

logger = logging.getLogger("trader.exchange")

# Limit price of a stop-limit sits this fraction below the trigger.
STOP_LIMIT_OFFSET = 0.01

_STATUS_MAP = {
    "open": ORDER_OPEN,
    "closed": ORDER_CLOSED,
    "canceled": ORDER_CANCELLED,
    "cancelled": ORDER_CANCELLED,
    "expired": ORDER_CANCELLED,
    "rejected": ORDER_CANCELLED,
}


def translate_error(exc: Exception) -> ExchangeError:
    """Map a ccxt (or timeout) exception onto the execution.port hierarchy."""
    if isinstance(exc, asyncio.TimeoutError) or isinstance(exc, ccxt.RequestTimeout):
        return ExchangeTimeoutError(str(exc) or "request timed out")
    if isinstance(exc, ccxt.OrderNotFound):
        return OrderNotFoundError(str(exc))
    if isinstance(exc, ccxt.InsufficientFunds):
        return InsufficientFundsError(str(exc))
    if isinstance(exc, (ccxt.NotSupported, ccxt.InvalidOrder)):
        return UnsupportedOrderError(str(exc))
    return ExchangeError(f"{type(exc).__name__}: {exc}")


def parse_order(raw: dict[str, Any]) -> OrderResult:
    """Normalize a ccxt order structure."""
    ts = raw.get("timestamp")
    stop_price = raw.get("stopPrice") or raw.get("triggerPrice")
    average = raw.get("average") or (raw.get("price") if raw.get("filled") else None)
    return OrderResult(
        id=str(raw["id"]),
        side=raw.get("side") or "",
        amount=float(raw.get("amount") or 0.0),
        status=_STATUS_MAP.get(raw.get("status") or "open", ORDER_OPEN),
        filled=float(raw.get("filled") or 0.0),
        average=float(average) if average else None,
        order_type=str(raw.get("type") or "market").lower(),
        stop_price=float(stop_price) if stop_price else None,
        timestamp=datetime.fromtimestamp(ts / 1000, tz=timezone.utc) if ts else None,
    )


class CcxtExchange:
    """ExecutionPort over a ccxt async exchange.

    Parameters
    ----------
    exchange_id:
        ccxt exchange id, e.g. "binance".
    symbol:
        Unified market symbol, e.g. "BTC/USDT".
    api_key, api_secret:
        Credentials; empty for public-only use.
    sandbox:
        Route to the exchange testnet.
    timeout_s:
        Upper bound for each call.
    client:
        Pre-built client (tests inject a mock).
    """

    def __init__(
        self,
        exchange_id: str,
        symbol: str,
        *,
        api_key: str = "",
        api_secret: str = "",
        sandbox: bool = False,
        timeout_s: float = 10.0,
        client: Any = None,
    ) -> None:
        self.symbol = symbol
        self._base, self._quote = symbol.split("/")
        self._timeout = timeout_s
        if client is None:
            exchange_class = getattr(ccxt, exchange_id)
            client = exchange_class({
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "options": {"defaultType": "spot"},
            })
            if sandbox:
                client.set_sandbox_mode(True)
        self._client = client
        self._market: dict[str, Any] | None = None

    async def _call(self, what: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (asyncio.TimeoutError, ccxt.BaseError) as exc:
            err = translate_error(exc)
            logger.warning("%s failed: %s", what, err)
            raise err from exc

    # -- ExecutionPort -------------------------------------------------------

    async def connect(self) -> None:
        if self._market is not None:
            return
        await self._call("load_markets", self._client.load_markets())
        self._market = self._client.market(self.symbol)
        logger.info("Connected to %s market %s (min amount %s)", self._client.id, self.symbol, self.min_order_amount)

    async def close(self) -> None:
        await self._client.close()

    async def fetch_balance(self) -> Balance:
        raw = await self._call("fetch_balance", self._client.fetch_balance())
        quote = raw.get(self._quote) or {}
        base = raw.get(self._base) or {}
        return Balance(
            quote_free=float(quote.get("free") or 0.0),
            quote_total=float(quote.get("total") or 0.0),
            base_free=float(base.get("free") or 0.0),
            base_total=float(base.get("total") or 0.0),
        )

    async def fetch_ticker(self) -> Ticker:
        raw = await self._call("fetch_ticker", self._client.fetch_ticker(self.symbol))
        if raw.get("last") is None:
            raise ExchangeError(f"ticker for {self.symbol} has no last price")
        ts = raw.get("timestamp")
        return Ticker(
            symbol=self.symbol,
            last=float(raw["last"]),
            timestamp=datetime.fromtimestamp(ts / 1000, tz=timezone.utc) if ts else None,
        )

    async def create_market_order(self, side: str, amount: float) -> OrderResult:
        raw = await self._call(
            f"create_market_order {side}",
            self._client.create_order(self.symbol, "market", side, amount),
        )
        return parse_order(raw)

    async def place_protective_stop(self, amount: float, stop_price: float) -> OrderResult:
        limit_price = float(self._client.price_to_precision(self.symbol, stop_price * (1 - STOP_LIMIT_OFFSET)))
        trigger = float(self._client.price_to_precision(self.symbol, stop_price))
        raw = await self._call(
            "place_protective_stop",
            self._client.create_order(
                self.symbol,
                "STOP_LOSS_LIMIT",
                "sell",
                amount,
                limit_price,
                {"stopPrice": trigger, "timeInForce": "GTC"},
            ),
        )
        order = parse_order(raw)
        if order.stop_price is None:
            order = OrderResult(
                id=order.id, side="sell", amount=order.amount or amount, status=order.status,
                filled=order.filled, average=order.average, order_type="stop",
                stop_price=trigger, timestamp=order.timestamp,
            )
        return order

    async def cancel_order(self, order_id: str) -> None:
        await self._call(f"cancel_order {order_id}", self._client.cancel_order(order_id, self.symbol))

    async def fetch_order(self, order_id: str) -> OrderResult:
        raw = await self._call(f"fetch_order {order_id}", self._client.fetch_order(order_id, self.symbol))
        return parse_order(raw)

    async def fetch_open_orders(self) -> list[OrderResult]:
        raw = await self._call("fetch_open_orders", self._client.fetch_open_orders(self.symbol))
        return [parse_order(o) for o in raw]

    def amount_to_precision(self, amount: float) -> float:
        try:
            return float(self._client.amount_to_precision(self.symbol, amount))
        except ccxt.BaseError as exc:
            # ccxt refuses amounts that round to zero
            logger.debug("amount_to_precision(%s) rejected: %s", amount, exc)
            return 0.0

    @property
    def min_order_amount(self) -> float:
        if self._market is None:
            return 0.0
        limits = self._market.get("limits") or {}
        return float((limits.get("amount") or {}).get("min") or 0.0)
