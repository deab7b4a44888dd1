"""Candle, tick, queue and integrity persistence."""

from .base import Storage, candles_to_frame, merge_accumulate
from .memory import MemoryStorage
from .sqlite import SQLiteStorage

__all__ = [
    "Storage",
    "candles_to_frame",
    "merge_accumulate",
    "MemoryStorage",
    "SQLiteStorage",
]
