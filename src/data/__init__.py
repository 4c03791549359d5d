"""
Data pipeline: fetch OHLCV, normalize to UTC, persist candles, poll the live feed.

Depends on trade_core.contracts for Candle; no dependency from trade_core back to data.
"""

from data.candle_store import CandleStore
from data.feed import MarketSnapshot, PollingMarketFeed
from data.fetcher import CandleFetcher, FetchResult, MockCandleFetcher

__all__ = [
    "CandleFetcher",
    "CandleStore",
    "FetchResult",
    "MarketSnapshot",
    "MockCandleFetcher",
    "PollingMarketFeed",
    "get_ccxt_fetcher",
]


def get_ccxt_fetcher(exchange_id: str, **kwargs):
    """Lazy import to avoid requiring ccxt when not used."""
    from data.ccxt_fetcher import CcxtCandleFetcher

    return CcxtCandleFetcher(exchange_id, **kwargs)
