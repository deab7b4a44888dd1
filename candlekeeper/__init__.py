"""Self-healing multi-resolution OHLCV candle engine."""

__version__ = "0.1.0"
