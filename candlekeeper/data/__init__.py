"""
Data Layer - Tick ingestion and candle construction.

Main Components:
    SpikeFilter: Rejects implausible price jumps
    TickStore: Validated, buffered tick persistence
    CandleBuilder: Bottom-up multi-resolution candle construction
    GapDetector: Missing and suspect candle detection
"""

from .spike_filter import SpikeFilter
from .tick_store import TickStore
from .candle_builder import CandleBuilder, aggregate, candle_from_ticks
from .gap_detector import GapDetector

__all__ = [
    "SpikeFilter",
    "TickStore",
    "CandleBuilder",
    "aggregate",
    "candle_from_ticks",
    "GapDetector",
]
