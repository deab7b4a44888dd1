"""Core data types for the candle engine.

This module defines all fundamental data structures used throughout the
engine using dataclasses. All types follow strict validation rules:
- Decimal for all prices and volumes (never float)
- datetime for all timestamps (UTC-aware)
- Validation in dedicated methods where needed
- Immutable types are frozen
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any

from .constants import (
    Resolution, InstrumentClass, InstrumentTier, TickSource,
    CandleOrigin, BackfillStatus, GapKind, GapDisposition,
)
from .exceptions import InvalidCandleError


def ensure_utc(timestamp: datetime) -> datetime:
    """Return ``timestamp`` as an aware UTC datetime."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Market Data Types
# ============================================================================

@dataclass(frozen=True)
class Instrument:
    """
    Tradable instrument definition.

    Attributes:
        code: Internal instrument code (e.g., "EURUSD")
        instrument_class: Asset class used for thresholds and calendars
        vendor_symbol: Symbol on the real-time feed (e.g., "OANDA:EUR_USD")
        tier: Healing tier (primary instruments heal more often)
        provider_symbols: Historical vendor name → vendor ticker
    """
    code: str
    instrument_class: InstrumentClass = InstrumentClass.FOREX
    vendor_symbol: str = ""
    tier: InstrumentTier = InstrumentTier.PRIMARY
    provider_symbols: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __str__(self) -> str:
        return self.code

    def __hash__(self) -> int:
        return hash(self.code)

    def provider_symbol(self, provider: str) -> Optional[str]:
        """Ticker for ``provider``, or None when the vendor does not list it."""
        return self.provider_symbols.get(provider)


@dataclass
class Candle:
    """
    OHLCV candle for one (instrument, resolution, period_start) key.

    ``open == high == low == close`` is treated as a suspect (incomplete)
    candle rather than a valid market state.
    """
    instrument: str
    resolution: Resolution
    period_start: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    spread: Optional[Decimal] = None
    origin: CandleOrigin = CandleOrigin.LIVE
    is_complete: bool = True
    source_count: int = 0

    def __post_init__(self):
        """Ensure UTC timezone."""
        self.period_start = ensure_utc(self.period_start)

    @property
    def key(self) -> tuple:
        return (self.instrument, self.resolution, self.period_start)

    @property
    def period_end(self) -> datetime:
        return self.period_start + self.resolution.period

    @property
    def is_flat(self) -> bool:
        """All four prices identical, the signature of an incomplete candle."""
        return self.open == self.high == self.low == self.close

    @property
    def range(self) -> Decimal:
        """High - Low"""
        return self.high - self.low

    def validate(self) -> None:
        """
        Check OHLC integrity.

        Raises:
            InvalidCandleError: if any invariant is violated
        """
        if any(p <= 0 for p in (self.open, self.high, self.low, self.close)):
            raise InvalidCandleError(
                "Invalid candle: non-positive price",
                instrument=self.instrument,
                period_start=self.period_start.isoformat()
            )

        if self.high < max(self.open, self.close, self.low):
            raise InvalidCandleError(
                f"Invalid candle: high ({self.high}) < max(open, close, low)",
                instrument=self.instrument,
                period_start=self.period_start.isoformat()
            )

        if self.low > min(self.open, self.close):
            raise InvalidCandleError(
                f"Invalid candle: low ({self.low}) > min(open, close)",
                instrument=self.instrument,
                period_start=self.period_start.isoformat()
            )

        if self.volume < 0:
            raise InvalidCandleError(
                f"Invalid candle: negative volume ({self.volume})",
                instrument=self.instrument,
                period_start=self.period_start.isoformat()
            )

    def is_valid(self) -> bool:
        try:
            self.validate()
        except InvalidCandleError:
            return False
        return True

    def ohlcv(self) -> tuple:
        return (self.open, self.high, self.low, self.close, self.volume)

    def copy(self, **changes: Any) -> "Candle":
        return replace(self, **changes)


@dataclass
class Tick:
    """One observed trade or quote."""
    instrument: str
    price: Decimal
    timestamp: datetime
    volume: Decimal = Decimal("0")
    source: TickSource = TickSource.LIVE
    is_valid: bool = True

    def __post_init__(self):
        """Ensure UTC timezone."""
        self.timestamp = ensure_utc(self.timestamp)

    @property
    def dedup_key(self) -> tuple:
        return (self.price, self.timestamp)


# ============================================================================
# Filter / Ingestion Results
# ============================================================================

@dataclass(frozen=True)
class SpikeCheck:
    """Outcome of a spike filter check."""
    accepted: bool
    reason: Optional[str] = None
    change_pct: Optional[float] = None
    threshold: Optional[float] = None
    last_price: Optional[Decimal] = None


@dataclass(frozen=True)
class TickResult:
    """Outcome of offering a tick to the tick store."""
    accepted: bool
    reason: Optional[str] = None
    tick: Optional[Tick] = None
    spike: Optional[SpikeCheck] = None


@dataclass
class BuildResult:
    """
    Outcome of a candle build.

    ``candle`` is None when nothing was written; ``is_gap`` marks the period
    as a gap candidate for the detector/orchestrator.
    """
    instrument: str
    resolution: Resolution
    period_start: datetime
    candle: Optional[Candle] = None
    is_gap: bool = False
    skipped: Optional[str] = None


# ============================================================================
# Healing Types
# ============================================================================

@dataclass
class Gap:
    """
    A detected discontinuity in the stored series.

    ``end`` is exclusive: the gap covers periods starting in [start, end).
    """
    instrument: str
    resolution: Resolution
    start: datetime
    end: datetime
    missing_count: int
    kind: GapKind = GapKind.BETWEEN
    age: timedelta = timedelta(0)
    disposition: Optional[GapDisposition] = None

    def __post_init__(self):
        self.start = ensure_utc(self.start)
        self.end = ensure_utc(self.end)


@dataclass
class BackfillItem:
    """
    Unit of healing work in the backfill queue.

    State transitions:
    PENDING → PROCESSING → COMPLETED
                  ↓
          PENDING (retry) / FAILED
    """
    instrument: str
    resolution: Resolution
    gap_start: datetime
    gap_end: datetime
    priority: int = 5
    status: BackfillStatus = BackfillStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    last_attempt_at: Optional[datetime] = None

    def __post_init__(self):
        if not 0 <= self.priority <= 10:
            raise ValueError(f"Backfill priority must be 0-10, got {self.priority}")
        self.gap_start = ensure_utc(self.gap_start)
        self.gap_end = ensure_utc(self.gap_end)
        self.created_at = ensure_utc(self.created_at)

    @property
    def range_key(self) -> tuple:
        return (self.instrument, self.resolution, self.gap_start, self.gap_end)

    def is_terminal(self) -> bool:
        return self.status in {BackfillStatus.COMPLETED, BackfillStatus.FAILED}


@dataclass
class IntegrityRecord:
    """
    Per (instrument, resolution, day) rollup of candle counts.
    """
    instrument: str
    resolution: Resolution
    day: str
    expected: int = 0
    actual: int = 0
    missing: int = 0
    incomplete: int = 0
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def coverage(self) -> float:
        if self.expected == 0:
            return 1.0
        return min(1.0, self.actual / self.expected)

    @property
    def status(self) -> str:
        return "gaps" if self.missing > 0 or self.incomplete > 0 else "ok"
