"""
Backfill Provider - Uniform historical fetch over one or two vendors.

Responsibilities:
1. Split long ranges into resolution-sized chunks
2. Pace, time out and retry each vendor call
3. Merge primary and secondary vendor results
4. Map raw rows to validated Candle objects

Fetching has no storage side effects; saving is the orchestrator's job, so a
fetch can always be retried.
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import ProviderConfig
from ..core.constants import CHUNK_DAYS, CandleOrigin, Resolution
from ..core.exceptions import (
    InvalidCandleError, ProviderError, ProviderTimeoutError, RateLimitError,
    TransientProviderError, UnsupportedInstrumentError,
)
from ..core.timeframes import iter_periods, parse_timestamp, period_start
from ..core.types import Candle, Instrument, ensure_utc
from ..markets.calendar import MarketCalendar
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from .base import HistoricalProvider


class VendorStats:
    """Per-vendor request counters."""

    def __init__(self):
        self.requests = 0
        self.successes = 0
        self.failures = 0
        self.rate_limited = 0
        self.candles = 0

    def as_dict(self) -> dict:
        return {
            'requests': self.requests,
            'successes': self.successes,
            'failures': self.failures,
            'rate_limited': self.rate_limited,
            'candles': self.candles,
        }


class BackfillProvider:
    """
    Primary-first-then-merge historical fetcher.

    The secondary vendor is only asked when the primary's coverage of the
    span is below ``min_coverage``; primary candles win on shared timestamps.
    """

    def __init__(
        self,
        primary: HistoricalProvider,
        secondary: Optional[HistoricalProvider] = None,
        config: Optional[ProviderConfig] = None,
        calendar: Optional[MarketCalendar] = None,
        metrics: Optional[MetricsTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.primary = primary
        self.secondary = secondary
        self.config = config or ProviderConfig()
        self.calendar = calendar or MarketCalendar()
        self.metrics = metrics or MetricsTracker()
        self._sleep = sleep

        self.stats: Dict[str, VendorStats] = {
            p.name: VendorStats() for p in (primary, secondary) if p is not None
        }
        self.logger = get_logger(__name__)

    @property
    def providers(self) -> List[HistoricalProvider]:
        return [p for p in (self.primary, self.secondary) if p is not None]

    def supports(self, instrument: Instrument, resolution: Optional[Resolution] = None) -> bool:
        return any(p.supports(instrument, resolution) for p in self.providers)

    async def fetch_range(
        self,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Candle]:
        """
        Fetch candles for [start, end), sorted and deduplicated.

        Raises:
            UnsupportedInstrumentError: if no vendor serves the instrument
            RateLimitError: if a vendor rate-limited the request and no
                fallback succeeded
            ProviderError: on exhausted retries or other vendor failures
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            return []

        primary_ok = self.primary.supports(instrument, resolution)
        secondary_ok = self.secondary is not None and self.secondary.supports(instrument, resolution)

        if not primary_ok and not secondary_ok:
            raise UnsupportedInstrumentError(
                "No provider supports instrument",
                instrument=instrument.code, resolution=resolution.value
            )

        if not primary_ok:
            return await self._fetch_from(self.secondary, instrument, resolution, start, end)

        try:
            primary_candles = await self._fetch_from(self.primary, instrument, resolution, start, end)
        except ProviderError as e:
            if not secondary_ok or self.config.strategy == "primary_only":
                raise
            self.logger.warning(
                "Primary provider failed, trying secondary",
                instrument=instrument.code,
                resolution=resolution.value,
                error=str(e)
            )
            try:
                return await self._fetch_from(self.secondary, instrument, resolution, start, end)
            except ProviderError as secondary_error:
                self.logger.error(
                    "Secondary provider failed",
                    instrument=instrument.code,
                    resolution=resolution.value,
                    error=str(secondary_error)
                )
                raise e

        if not secondary_ok or self.config.strategy == "primary_only":
            return primary_candles

        expected = self.expected_count(instrument, resolution, start, end)
        coverage = len(primary_candles) / expected if expected else 1.0
        if coverage >= self.config.min_coverage:
            return primary_candles

        self.logger.info(
            "Primary coverage low, merging secondary",
            instrument=instrument.code,
            resolution=resolution.value,
            coverage=f"{coverage:.2f}"
        )
        try:
            secondary_candles = await self._fetch_from(self.secondary, instrument, resolution, start, end)
        except ProviderError as e:
            self.logger.warning(
                "Secondary provider failed, using primary data only",
                instrument=instrument.code,
                error=str(e)
            )
            return primary_candles

        return merge_candles(primary_candles, secondary_candles)

    def expected_count(self, instrument: Instrument, resolution: Resolution, start: datetime, end: datetime) -> int:
        periods = iter_periods(start, end, resolution)
        return self.calendar.count_open(instrument.instrument_class, periods)

    async def _fetch_from(
        self,
        provider: HistoricalProvider,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Candle]:
        """Fetch every chunk of [start, end) sequentially from one vendor."""
        chunk = timedelta(days=CHUNK_DAYS[resolution])
        rows: List[Dict[str, Any]] = []

        chunk_start = start
        first = True
        while chunk_start < end:
            chunk_end = min(chunk_start + chunk, end)
            if not first:
                await self._sleep(self.config.chunk_delay_seconds)
            first = False

            rows.extend(await self._call(provider, instrument, resolution, chunk_start, chunk_end))
            chunk_start = chunk_end

        candles = to_candles(instrument.code, resolution, rows, start, end)
        self.stats[provider.name].candles += len(candles)
        if len(candles) != len(rows):
            self.logger.debug(
                "Provider rows dropped",
                provider=provider.name,
                instrument=instrument.code,
                rows=len(rows),
                kept=len(candles)
            )
        return candles

    async def _call(
        self,
        provider: HistoricalProvider,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Dict[str, Any]]:
        """One chunk with hard timeout and bounded retry of transient errors."""
        stats = self.stats[provider.name]
        last_error: Optional[ProviderError] = None

        for attempt in range(1, self.config.max_retries + 1):
            stats.requests += 1
            self.metrics.increment('backfill_requests', label=provider.name)
            try:
                rows = await asyncio.wait_for(
                    provider.fetch_chunk(instrument, resolution, start, end),
                    timeout=self.config.timeout_seconds
                )
            except RateLimitError:
                stats.rate_limited += 1
                stats.failures += 1
                self.metrics.increment('backfill_failures', label=provider.name)
                self.logger.warning(
                    "Provider rate limited",
                    provider=provider.name,
                    instrument=instrument.code,
                    resolution=resolution.value
                )
                raise
            except asyncio.TimeoutError:
                last_error = ProviderTimeoutError(
                    "Provider call timed out",
                    provider=provider.name,
                    timeout=self.config.timeout_seconds
                )
            except TransientProviderError as e:
                last_error = e
            except ProviderError:
                stats.failures += 1
                self.metrics.increment('backfill_failures', label=provider.name)
                raise
            else:
                stats.successes += 1
                self.metrics.increment('backfill_successes', label=provider.name)
                return rows

            stats.failures += 1
            self.metrics.increment('backfill_failures', label=provider.name)
            self.logger.warning(
                "Transient provider error",
                provider=provider.name,
                instrument=instrument.code,
                attempt=attempt,
                error=str(last_error)
            )
            if attempt < self.config.max_retries:
                await self._sleep(self.config.retry_backoff_seconds)

        raise last_error

    def get_stats(self) -> dict:
        return {name: s.as_dict() for name, s in self.stats.items()}


def to_candles(
    instrument: str,
    resolution: Resolution,
    rows: List[Dict[str, Any]],
    start: datetime,
    end: datetime
) -> List[Candle]:
    """Map raw rows to candles in [start, end); invalid rows are dropped, first row wins."""
    by_start: Dict[datetime, Candle] = {}
    for row in rows:
        ts = parse_timestamp(row.get("timestamp"))
        if ts is None:
            continue
        aligned = period_start(ts, resolution)
        if not start <= aligned < end or aligned in by_start:
            continue
        try:
            candle = Candle(
                instrument=instrument,
                resolution=resolution,
                period_start=aligned,
                open=_decimal(row.get("open")),
                high=_decimal(row.get("high")),
                low=_decimal(row.get("low")),
                close=_decimal(row.get("close")),
                volume=_decimal(row.get("volume") or 0),
                origin=CandleOrigin.BACKFILL,
                is_complete=True,
                source_count=0,
            )
            candle.validate()
        except (InvalidCandleError, InvalidOperation, TypeError, ValueError):
            continue
        by_start[aligned] = candle
    return [by_start[k] for k in sorted(by_start)]


def merge_candles(primary: List[Candle], secondary: List[Candle]) -> List[Candle]:
    """Union of both lists; the primary candle wins on a shared period_start."""
    merged = {c.period_start: c for c in secondary}
    merged.update({c.period_start: c for c in primary})
    return [merged[k] for k in sorted(merged)]


def _decimal(value: Any) -> Decimal:
    if value is None:
        raise ValueError("missing price")
    return Decimal(str(value))
