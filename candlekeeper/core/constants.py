"""System-wide constants and enumerations for the candle engine.

This module defines all constants, enumerations, and default values used
throughout the engine. Every numeric default here can be overridden from
``config/config.yaml``; these values only apply when the configuration is
silent.
"""

from datetime import timedelta
from decimal import Decimal
from enum import Enum


# ============================================================================
# Enumerations
# ============================================================================

class Resolution(str, Enum):
    """Enumeration of candle resolutions.

    Ordered from the base (shortest) resolution to the longest. Every
    resolution above the base is aggregated from the one directly below it:
    1m → 5m → 15m → 30m → 1h → 4h → 1d.
    """
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def period(self) -> timedelta:
        """Length of one candle period."""
        return RESOLUTION_PERIODS[self]

    @property
    def seconds(self) -> int:
        return int(RESOLUTION_PERIODS[self].total_seconds())


class InstrumentClass(str, Enum):
    """Enumeration of instrument classes.

    Drives spike thresholds and market calendar rules:
    - FOREX: Currency pairs (Sun 21:00 - Fri 22:00 UTC)
    - METAL: Spot gold/silver (forex calendar, wider thresholds)
    - CRYPTO: Crypto pairs (24/7)
    - EQUITY: Exchange-listed stocks (US session incl. extended hours)
    """
    FOREX = "forex"
    METAL = "metal"
    CRYPTO = "crypto"
    EQUITY = "equity"


class InstrumentTier(str, Enum):
    """Healing priority tier of an instrument."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class TickSource(str, Enum):
    """Where a tick came from."""
    LIVE = "live"
    BACKFILL = "backfill"
    SYNTHETIC = "synthetic"


class CandleOrigin(str, Enum):
    """How a stored candle was produced.

    - LIVE: built from ticks (base resolution)
    - AGGREGATE: aggregated from lower resolution candles
    - BACKFILL: written by the healing path from a historical provider
    """
    LIVE = "live"
    AGGREGATE = "aggregate"
    BACKFILL = "backfill"


class WriteMode(str, Enum):
    """Candle save policy.

    - ACCUMULATE: extend an in-progress candle (high=max, low=min,
      close=new, volume+=new). Only valid while the period is open.
    - OVERWRITE: replace every field unconditionally (healing, rebuild).
    """
    ACCUMULATE = "accumulate"
    OVERWRITE = "overwrite"


class BackfillStatus(str, Enum):
    """Backfill queue item lifecycle.

    PENDING → PROCESSING → COMPLETED
                  ↓
            PENDING (retry) / FAILED (attempts exhausted)
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GapKind(str, Enum):
    """Where in a scanned range a gap was found."""
    LEADING = "leading"
    BETWEEN = "between"
    TRAILING = "trailing"
    EMPTY = "empty"
    SUSPECT = "suspect"


class GapDisposition(str, Enum):
    """Classification of a detected gap.

    - FIXABLE: queue for healing now
    - TOO_RECENT: provider has not published the data yet
    - MARKET_CLOSED: the span was a closed session, not a gap
    """
    FIXABLE = "fixable"
    TOO_RECENT = "too_recent"
    MARKET_CLOSED = "market_closed"


# ============================================================================
# Resolution Tables
# ============================================================================

RESOLUTION_PERIODS = {
    Resolution.M1: timedelta(minutes=1),
    Resolution.M5: timedelta(minutes=5),
    Resolution.M15: timedelta(minutes=15),
    Resolution.M30: timedelta(minutes=30),
    Resolution.H1: timedelta(hours=1),
    Resolution.H4: timedelta(hours=4),
    Resolution.D1: timedelta(days=1),
}

RESOLUTION_CHAIN = [
    Resolution.M1,
    Resolution.M5,
    Resolution.M15,
    Resolution.M30,
    Resolution.H1,
    Resolution.H4,
    Resolution.D1,
]
"""Build order. Every entry is aggregated from the entry before it."""

BASE_RESOLUTION: Resolution = Resolution.M1


# ============================================================================
# Spike Filter Defaults
# ============================================================================

DEFAULT_TICK_SPIKE_THRESHOLDS = {
    InstrumentClass.FOREX: 0.3,
    InstrumentClass.METAL: 0.8,
    InstrumentClass.CRYPTO: 3.0,
    InstrumentClass.EQUITY: 5.0,
}
"""Maximum percent change between consecutive accepted tick prices."""

DEFAULT_CANDLE_SPIKE_THRESHOLDS = {
    InstrumentClass.FOREX: 0.5,
    InstrumentClass.METAL: 1.5,
    InstrumentClass.CRYPTO: 5.0,
    InstrumentClass.EQUITY: 10.0,
}
"""Maximum percent move of a candle against the previous close."""

FALLBACK_TICK_THRESHOLD: float = 0.5

STALE_PRICE_SECONDS: int = 300
"""Last accepted price older than this doubles the spike threshold."""

MAX_VOLATILITY_MULTIPLIER: float = 3.0
"""Volatility widening never exceeds this multiple of the base threshold."""

PRICE_HISTORY_LENGTH: int = 30

MIN_VOLATILITY_SAMPLES: int = 5

SEED_LOOKBACK_MINUTES: int = 60
"""Persisted base closes loaded to seed the spike filter on start-up."""


# ============================================================================
# Tick Store Defaults
# ============================================================================

TICK_BUFFER_SIZE: int = 1000
TICK_FLUSH_THRESHOLD: int = 100
TICK_BATCH_SIZE: int = 500
TICK_REQUEUE_ON_FAILURE: int = 100
TICK_RETENTION_HOURS: int = 48


# ============================================================================
# Candle Builder / Gap Detector Defaults
# ============================================================================

MIN_COMPLETE_TICKS: int = 2
"""A base candle built from fewer ticks is saved but flagged incomplete."""

MIN_SOURCE_COVERAGE: float = 0.8

GAP_INTERVAL_FACTOR: float = 1.5
"""Spacing above this multiple of the period between two candles is a gap."""

TRAILING_GAP_PERIODS: int = 2

PROVIDER_DELAY_MINUTES: int = 20
"""Typical publication delay of the historical providers."""


# ============================================================================
# Backfill / Healing Defaults
# ============================================================================

CHUNK_DAYS = {
    Resolution.M1: 1,
    Resolution.M5: 7,
    Resolution.M15: 14,
    Resolution.M30: 30,
    Resolution.H1: 60,
    Resolution.H4: 180,
    Resolution.D1: 365,
}
"""Provider request span per resolution. Base data is voluminous."""

PROVIDER_TIMEOUT_SECONDS: float = 45.0
PROVIDER_MAX_RETRIES: int = 3
PROVIDER_RETRY_BACKOFF_SECONDS: float = 2.0
PROVIDER_CHUNK_DELAY_SECONDS: float = 1.5

MAX_BACKFILL_ATTEMPTS: int = 3
BACKFILL_BATCH_LIMIT: int = 10
COMPLETED_RETENTION_DAYS: int = 7

CIRCUIT_FAILURE_THRESHOLD: int = 2
CIRCUIT_COOLDOWN_MINUTES: int = 3

HEALING_WINDOW_MINUTES: int = 15

PRIORITY_RECENT_GAP: int = 10
PRIORITY_SUSPECT_CANDLE: int = 8
PRIORITY_INTEGRITY_GAP: int = 5
MAX_PRIORITY: int = 10


# ============================================================================
# Feed Defaults
# ============================================================================

RECONNECT_BASE_DELAY_SECONDS: float = 1.0
RECONNECT_MAX_DELAY_SECONDS: float = 30.0
MAX_RECONNECT_ATTEMPTS: int = 10
"""Maximum number of reconnection attempts before giving up.

After this many failed reconnection attempts, the feed stops trying and
the health monitor reports the feed as disconnected.
"""
