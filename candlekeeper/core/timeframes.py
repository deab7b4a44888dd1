"""UTC period arithmetic for the resolution chain."""

from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Union

from .constants import Resolution, RESOLUTION_CHAIN
from .exceptions import UnknownResolutionError
from .types import ensure_utc


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_resolution(value: Union[str, Resolution]) -> Resolution:
    """
    Convert a resolution string (e.g. "5m") into a Resolution.

    Raises:
        UnknownResolutionError: if the value is not part of the chain
    """
    if isinstance(value, Resolution):
        return value
    try:
        return Resolution(str(value).strip().lower())
    except ValueError:
        raise UnknownResolutionError(
            f"Unknown resolution: {value}",
            supported=[r.value for r in RESOLUTION_CHAIN]
        ) from None


def period_start(timestamp: datetime, resolution: Resolution) -> datetime:
    """
    Align a timestamp to the start of its period.

    Every period is aligned on the UNIX epoch, so 4h periods start at
    00, 04, 08, ... UTC and daily periods at midnight UTC.
    """
    ts = ensure_utc(timestamp)
    elapsed = int((ts - _EPOCH).total_seconds())
    aligned = elapsed - (elapsed % resolution.seconds)
    return _EPOCH + timedelta(seconds=aligned)


def period_end(start: datetime, resolution: Resolution) -> datetime:
    return ensure_utc(start) + resolution.period


def is_period_closed(start: datetime, resolution: Resolution, now: datetime) -> bool:
    """True once ``now`` has reached the end of the period."""
    return period_end(start, resolution) <= ensure_utc(now)


def last_closed_period(now: datetime, resolution: Resolution) -> datetime:
    """Start of the most recent period that has fully elapsed at ``now``."""
    return period_start(now, resolution) - resolution.period


def source_of(resolution: Resolution) -> Optional[Resolution]:
    """The resolution a candle is aggregated from (None for the base)."""
    idx = RESOLUTION_CHAIN.index(resolution)
    if idx == 0:
        return None
    return RESOLUTION_CHAIN[idx - 1]


def higher_than(resolution: Resolution) -> List[Resolution]:
    """Every resolution above ``resolution`` in build order."""
    idx = RESOLUTION_CHAIN.index(resolution)
    return RESOLUTION_CHAIN[idx + 1:]


def sources_per_period(resolution: Resolution) -> int:
    """Number of source candles that make up one full period."""
    source = source_of(resolution)
    if source is None:
        return 1
    return resolution.seconds // source.seconds


def iter_periods(start: datetime, end: datetime, resolution: Resolution) -> Iterator[datetime]:
    """Yield the aligned period starts in [start, end)."""
    current = period_start(start, resolution)
    if current < ensure_utc(start):
        current += resolution.period
    end = ensure_utc(end)
    while current < end:
        yield current
        current += resolution.period


def count_periods(start: datetime, end: datetime, resolution: Resolution) -> int:
    return sum(1 for _ in iter_periods(start, end, resolution))


def parse_timestamp(value: Union[datetime, int, float, None]) -> Optional[datetime]:
    """Accept an aware/naive datetime or epoch milliseconds; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
