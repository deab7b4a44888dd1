"""Historical OHLCV providers."""

from .base import HistoricalProvider, HTTPProvider, RateLimiter
from .backfill import BackfillProvider, merge_candles, to_candles
from .finnhub import FinnhubProvider
from .polygon import PolygonProvider

__all__ = [
    "HistoricalProvider",
    "HTTPProvider",
    "RateLimiter",
    "BackfillProvider",
    "merge_candles",
    "to_candles",
    "FinnhubProvider",
    "PolygonProvider",
]
