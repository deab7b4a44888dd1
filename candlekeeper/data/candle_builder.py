"""
Candle Builder - Builds the resolution chain bottom-up.

Chain: ticks → 1m → 5m → 15m → 30m → 1h → 4h → 1d. Every resolution above
the base is aggregated from the one directly below it, and only once its
period has closed. All candle writes go through ``save``, which owns the
accumulate-vs-overwrite policy.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

from ..core.config import BuilderConfig
from ..core.constants import BASE_RESOLUTION, CandleOrigin, Resolution, WriteMode
from ..core.exceptions import ClosedPeriodError, InvalidCandleError
from ..core.timeframes import (
    higher_than, is_period_closed, iter_periods, last_closed_period,
    period_start, source_of,
)
from ..core.types import BuildResult, Candle, Tick, ensure_utc
from ..markets.calendar import MarketCalendar
from ..markets.catalog import SymbolCatalog
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from ..storage.base import CandleRepository
from .spike_filter import SpikeFilter
from .tick_store import TickStore


def candle_from_ticks(
    instrument: str,
    minute_start: datetime,
    ticks: Sequence[Tick],
    min_complete_ticks: int = 2
) -> Candle:
    """Base candle from time-ordered ticks."""
    prices = [t.price for t in ticks]
    return Candle(
        instrument=instrument,
        resolution=BASE_RESOLUTION,
        period_start=minute_start,
        open=prices[0],
        high=max(prices),
        low=min(prices),
        close=prices[-1],
        volume=sum((t.volume for t in ticks), Decimal("0")),
        origin=CandleOrigin.LIVE,
        is_complete=len(ticks) >= min_complete_ticks,
        source_count=len(ticks),
    )


def aggregate(
    sources: Sequence[Candle],
    resolution: Resolution,
    start: datetime,
    expected: int = 0,
    min_coverage: float = 0.8
) -> Candle:
    """
    Aggregate source candles into one candle of ``resolution``.

    First open, last close, extrema of high/low, summed volume. Pure: the
    same sources always produce the same OHLCV.
    """
    ordered = sorted(sources, key=lambda c: c.period_start)
    coverage = len(ordered) / expected if expected > 0 else 1.0
    return Candle(
        instrument=ordered[0].instrument,
        resolution=resolution,
        period_start=start,
        open=ordered[0].open,
        high=max(c.high for c in ordered),
        low=min(c.low for c in ordered),
        close=ordered[-1].close,
        volume=sum((c.volume for c in ordered), Decimal("0")),
        origin=CandleOrigin.AGGREGATE,
        is_complete=coverage >= min_coverage,
        source_count=len(ordered),
    )


class CandleBuilder:
    """
    Builds and saves candles for every resolution in the chain.
    """

    def __init__(
        self,
        storage: CandleRepository,
        tick_store: TickStore,
        catalog: SymbolCatalog,
        calendar: Optional[MarketCalendar] = None,
        config: Optional[BuilderConfig] = None,
        metrics: Optional[MetricsTracker] = None,
        spike_filter: Optional[SpikeFilter] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.tick_store = tick_store
        self.catalog = catalog
        self.calendar = calendar or MarketCalendar()
        self.config = config or BuilderConfig()
        self.metrics = metrics or MetricsTracker()
        self.spike_filter = spike_filter
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.logger = get_logger(__name__)

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now else self._clock()

    # ── Writes ───────────────────────────────────────────

    async def save(
        self,
        candle: Candle,
        mode: WriteMode,
        now: Optional[datetime] = None,
        keep_healed: bool = False
    ) -> bool:
        """
        Persist a candle.

        ACCUMULATE extends an in-progress candle and is only valid while its
        period is open; it never modifies a healed (backfill) row. OVERWRITE
        replaces every field; with ``keep_healed`` a healed row is left alone.

        Returns:
            True if the row was written

        Raises:
            InvalidCandleError: if the candle violates OHLC integrity
            ClosedPeriodError: on an accumulate write to a closed period
        """
        candle.validate()

        if mode == WriteMode.ACCUMULATE:
            if is_period_closed(candle.period_start, candle.resolution, self._now(now)):
                raise ClosedPeriodError(
                    "Accumulate write to a closed period",
                    instrument=candle.instrument,
                    resolution=candle.resolution.value,
                    period_start=candle.period_start.isoformat()
                )
            stored = await self.storage.accumulate_candle(candle)
            return stored.origin != CandleOrigin.BACKFILL

        preserve = CandleOrigin.BACKFILL if keep_healed else None
        return await self.storage.upsert_candle(candle, preserve_origin=preserve)

    async def apply_tick(self, tick: Tick, now: Optional[datetime] = None) -> bool:
        """
        Live path: fold an accepted tick into its still-open base candle.

        Raises:
            ClosedPeriodError: if the tick's minute has already closed
        """
        candle = Candle(
            instrument=tick.instrument,
            resolution=BASE_RESOLUTION,
            period_start=period_start(tick.timestamp, BASE_RESOLUTION),
            open=tick.price,
            high=tick.price,
            low=tick.price,
            close=tick.price,
            volume=tick.volume,
            origin=CandleOrigin.LIVE,
            is_complete=False,
            source_count=1,
        )
        return await self.save(candle, WriteMode.ACCUMULATE, now=now)

    # ── Base resolution ──────────────────────────────────

    async def build_base(
        self,
        instrument: str,
        minute_start: datetime,
        now: Optional[datetime] = None
    ) -> BuildResult:
        """
        Finalize a closed base candle from its ticks.

        A healed row for the minute is kept. No ticks means a gap candidate
        and nothing is written.
        """
        now = self._now(now)
        start = period_start(minute_start, BASE_RESOLUTION)
        result = BuildResult(instrument, BASE_RESOLUTION, start)

        if not is_period_closed(start, BASE_RESOLUTION, now):
            result.skipped = "period_open"
            return result

        klass = self.catalog.instrument_class(instrument)
        if not self.calendar.is_open(klass, start).open:
            result.skipped = "market_closed"
            return result

        ticks = await self.tick_store.get_ticks_for_minute(instrument, start)
        if not ticks:
            result.is_gap = True
            return result

        candle = candle_from_ticks(instrument, start, ticks, self.config.min_complete_ticks)
        try:
            written = await self.save(candle, WriteMode.OVERWRITE, now=now, keep_healed=True)
        except InvalidCandleError as e:
            self.logger.error("Invalid base candle discarded", instrument=instrument, error=str(e))
            result.skipped = "invalid"
            return result

        if not written:
            result.skipped = "healed"
            return result

        result.candle = candle
        self._record_built(candle)
        return result

    async def build_base_all(self, now: Optional[datetime] = None) -> List[BuildResult]:
        """Finalize the last closed minute for every tracked instrument."""
        now = self._now(now)
        minute = last_closed_period(now, BASE_RESOLUTION)
        results = []
        for instrument in self.catalog.codes:
            results.append(await self.build_base(instrument, minute, now=now))
        return results

    # ── Higher resolutions ───────────────────────────────

    async def build_from_source(
        self,
        instrument: str,
        resolution: Resolution,
        now: Optional[datetime] = None
    ) -> BuildResult:
        """Aggregate the most recently closed period of ``resolution``."""
        now = self._now(now)
        start = last_closed_period(now, resolution)
        return await self._build_period(instrument, resolution, start, now, keep_healed=True)

    async def build_resolution_all(self, resolution: Resolution, now: Optional[datetime] = None) -> List[BuildResult]:
        now = self._now(now)
        results = []
        for instrument in self.catalog.codes:
            results.append(await self.build_from_source(instrument, resolution, now=now))
        return results

    async def rebuild(self, instrument: str, resolution: Resolution, start: datetime) -> BuildResult:
        """Re-aggregate one period from its sources and overwrite it unconditionally."""
        return await self._build_period(
            instrument, resolution, period_start(start, resolution), None, keep_healed=False
        )

    async def rebuild_upward(
        self,
        instrument: str,
        start: datetime,
        end: datetime,
        from_resolution: Resolution = BASE_RESOLUTION,
        now: Optional[datetime] = None
    ) -> List[BuildResult]:
        """
        Propagate a fix in [start, end) through every higher resolution, in chain order.

        Periods still open at ``now`` are left to the scheduled builds.
        """
        now = self._now(now)
        results = []
        for resolution in higher_than(from_resolution):
            first = period_start(start, resolution)
            for p in iter_periods(first, end, resolution):
                if not is_period_closed(p, resolution, now):
                    break
                results.append(await self.rebuild(instrument, resolution, p))
        return results

    def expected_sources(self, instrument: str, resolution: Resolution, start: datetime) -> int:
        """Source periods inside the period that fall into open market time (at least 1)."""
        source = source_of(resolution)
        klass = self.catalog.instrument_class(instrument)
        periods = iter_periods(start, start + resolution.period, source)
        return max(1, self.calendar.count_open(klass, periods))

    async def _build_period(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        now: Optional[datetime],
        keep_healed: bool
    ) -> BuildResult:
        result = BuildResult(instrument, resolution, start)
        source = source_of(resolution)
        if source is None:
            raise ValueError("Base resolution is built from ticks, use build_base")

        end = start + resolution.period
        if now is not None:
            if not is_period_closed(start, resolution, now):
                result.skipped = "period_open"
                return result
            klass = self.catalog.instrument_class(instrument)
            if not self.calendar.was_open(klass, start, end):
                result.skipped = "market_closed"
                return result

        sources = await self.storage.get_candles(instrument, source, start, end)
        if not sources:
            result.is_gap = True
            return result

        expected = self.expected_sources(instrument, resolution, start)
        candle = aggregate(sources, resolution, start, expected, self.config.min_source_coverage)

        try:
            written = await self.save(candle, WriteMode.OVERWRITE, keep_healed=keep_healed)
        except InvalidCandleError as e:
            self.logger.error(
                "Invalid aggregate discarded",
                instrument=instrument, resolution=resolution.value, error=str(e)
            )
            result.skipped = "invalid"
            return result

        if not written:
            result.skipped = "healed"
            return result

        if not candle.is_complete:
            self.logger.warning(
                "Incomplete candle",
                instrument=instrument,
                resolution=resolution.value,
                period_start=start.isoformat(),
                sources=len(sources),
                expected=expected
            )
        await self._check_spike(candle)

        result.candle = candle
        self._record_built(candle)
        return result

    async def _check_spike(self, candle: Candle) -> None:
        if self.spike_filter is None:
            return
        previous = await self.storage.get_candle(
            candle.instrument, candle.resolution, candle.period_start - candle.resolution.period
        )
        if previous is None:
            return
        check = self.spike_filter.check_candle(
            self.catalog.instrument_class(candle.instrument), candle, previous.close
        )
        if not check.accepted:
            self.logger.warning(
                "Candle spike detected",
                instrument=candle.instrument,
                resolution=candle.resolution.value,
                period_start=candle.period_start.isoformat(),
                reason=check.reason
            )

    def _record_built(self, candle: Candle) -> None:
        self.metrics.increment('candles_built', label=candle.resolution.value)
        if not candle.is_complete:
            self.metrics.increment('candles_incomplete', label=candle.resolution.value)
