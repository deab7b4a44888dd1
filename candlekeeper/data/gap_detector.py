"""
Gap Detector - Finds missing and suspect candles.

Walks stored candles in ascending order and reports spans where expected
candles are missing, plus flat (open == high == low == close) candles that
need a re-fetch even though a row exists. Each gap is then classified as
fixable, too recent for the providers, or a closed market span.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pandas as pd

from ..core.config import GapDetectorConfig
from ..core.constants import GapDisposition, GapKind, InstrumentClass, Resolution
from ..core.timeframes import iter_periods, period_start
from ..core.types import Gap, IntegrityRecord, ensure_utc
from ..markets.calendar import MarketCalendar
from ..markets.catalog import SymbolCatalog
from ..monitoring.logger import get_logger
from ..storage.base import CandleRepository


class GapDetector:
    """Scans the candle store for discontinuities."""

    def __init__(
        self,
        storage: CandleRepository,
        catalog: SymbolCatalog,
        calendar: Optional[MarketCalendar] = None,
        config: Optional[GapDetectorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.catalog = catalog
        self.calendar = calendar or MarketCalendar()
        self.config = config or GapDetectorConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.gaps_found = 0
        self.logger = get_logger(__name__)

    def _gap(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: datetime,
        kind: GapKind,
        now: datetime
    ) -> Gap:
        missing = int((end - start) / resolution.period)
        return Gap(
            instrument=instrument,
            resolution=resolution,
            start=start,
            end=end,
            missing_count=max(1, missing),
            kind=kind,
            age=now - end,
        )

    async def scan(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> List[Gap]:
        """
        Find missing spans in [start, end).

        ``end`` defaults to ``now``. Periods that have not closed at ``now``
        are never reported.
        """
        now = ensure_utc(now) if now else self._clock()
        period = resolution.period
        first_expected = period_start(ensure_utc(start), resolution)
        if first_expected < ensure_utc(start):
            first_expected += period
        boundary = period_start(min(ensure_utc(end) if end else now, now), resolution)

        if boundary <= first_expected:
            return []

        frame = await self.storage.get_candles_frame(instrument, resolution, first_expected, boundary)
        gaps: List[Gap] = []

        if frame.empty:
            gaps.append(self._gap(instrument, resolution, first_expected, boundary, GapKind.EMPTY, now))
            self.gaps_found += len(gaps)
            return gaps

        stamps = pd.Series(frame.index)
        limit = pd.Timedelta(period) * self.config.interval_factor

        # Leading: the first candle is treated as following a virtual candle
        # one period before the first expected start
        first = stamps.iloc[0].to_pydatetime()
        if first - (first_expected - period) > limit:
            gaps.append(self._gap(instrument, resolution, first_expected, first, GapKind.LEADING, now))

        intervals = stamps.diff()
        for idx in intervals.index[(intervals > limit).to_numpy()]:
            gap_start = stamps.iloc[idx - 1].to_pydatetime() + period
            gap_end = stamps.iloc[idx].to_pydatetime()
            gaps.append(self._gap(instrument, resolution, gap_start, gap_end, GapKind.BETWEEN, now))

        last = stamps.iloc[-1].to_pydatetime()
        if boundary - last > period * self.config.trailing_periods:
            gaps.append(self._gap(instrument, resolution, last + period, boundary, GapKind.TRAILING, now))

        self.gaps_found += len(gaps)
        return gaps

    async def find_suspect(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None
    ) -> List[Gap]:
        """Flat candles in [start, end), each as a one-period gap."""
        now = ensure_utc(now) if now else self._clock()
        candles = await self.storage.get_candles(instrument, resolution, start, end)
        return [
            self._gap(instrument, resolution, c.period_start, c.period_end, GapKind.SUSPECT, now)
            for c in candles if c.is_flat
        ]

    def classify(
        self,
        gap: Gap,
        instrument_class: Optional[InstrumentClass] = None,
        now: Optional[datetime] = None
    ) -> GapDisposition:
        """
        Decide what to do with a gap.

        TOO_RECENT when the gap ended less than the provider publication
        delay ago, MARKET_CLOSED when the calendar marks the span closed,
        FIXABLE otherwise. The disposition is also stored on the gap.
        """
        now = ensure_utc(now) if now else self._clock()
        klass = instrument_class or self.catalog.instrument_class(gap.instrument)
        age = now - gap.end
        gap.age = age

        if age < timedelta(minutes=self.config.provider_delay_minutes):
            disposition = GapDisposition.TOO_RECENT
        elif not self.calendar.was_open(klass, gap.start, gap.end):
            disposition = GapDisposition.MARKET_CLOSED
        else:
            disposition = GapDisposition.FIXABLE

        gap.disposition = disposition
        return disposition

    async def find_fixable(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
        include_suspect: bool = False
    ) -> List[Gap]:
        """Scan, optionally add suspect candles, and keep only FIXABLE gaps."""
        now = ensure_utc(now) if now else self._clock()
        gaps = await self.scan(instrument, resolution, start, end, now)
        if include_suspect:
            gaps += await self.find_suspect(instrument, resolution, start, end or now, now)

        klass = self.catalog.instrument_class(instrument)
        fixable = [g for g in gaps if self.classify(g, klass, now) == GapDisposition.FIXABLE]
        if len(fixable) != len(gaps):
            self.logger.debug(
                "Gaps filtered",
                instrument=instrument,
                resolution=resolution.value,
                found=len(gaps),
                fixable=len(fixable)
            )
        return fixable

    # ── Integrity ────────────────────────────────────────

    def expected_count(
        self,
        instrument_class: InstrumentClass,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> int:
        """Periods in [start, end) during open market time."""
        return self.calendar.count_open(instrument_class, iter_periods(start, end, resolution))

    async def coverage(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> float:
        """Stored / expected candles for the span (1.0 when nothing is expected)."""
        klass = self.catalog.instrument_class(instrument)
        expected = self.expected_count(klass, resolution, start, end)
        if expected == 0:
            return 1.0
        candles = await self.storage.get_candles(instrument, resolution, start, end)
        return min(1.0, len(candles) / expected)

    async def integrity_records(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None
    ) -> List[IntegrityRecord]:
        """Per UTC day counts of expected, actual, missing and incomplete candles."""
        now = ensure_utc(now) if now else self._clock()
        start = ensure_utc(start)
        end = min(ensure_utc(end), period_start(now, resolution))
        klass = self.catalog.instrument_class(instrument)

        frame = await self.storage.get_candles_frame(instrument, resolution, start, end)
        if frame.empty:
            actual = pd.Series(dtype="int64")
            incomplete = pd.Series(dtype="int64")
        else:
            flat = (frame["open"] == frame["high"]) & (frame["high"] == frame["low"]) & (frame["low"] == frame["close"])
            frame = frame.assign(
                day=frame.index.strftime("%Y-%m-%d"),
                suspect=(~frame["is_complete"].astype(bool)) | flat,
            )
            grouped = frame.groupby("day")
            actual = grouped.size()
            incomplete = grouped["suspect"].sum()

        records = []
        day = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
        while day < end:
            day_start = max(day, start)
            day_end = min(day + timedelta(days=1), end)
            key = day.strftime("%Y-%m-%d")
            expected = self.expected_count(klass, resolution, day_start, day_end)
            got = int(actual.get(key, 0))
            records.append(IntegrityRecord(
                instrument=instrument,
                resolution=resolution,
                day=key,
                expected=expected,
                actual=got,
                missing=max(0, expected - got),
                incomplete=int(incomplete.get(key, 0)),
                checked_at=now,
            ))
            day += timedelta(days=1)
        return records
