"""
Tick Store - Validates, buffers and persists raw ticks.

Ticks are validated, passed through the spike filter and buffered per
instrument in bounded deques. Buffers are flushed to storage in batches;
a failing batch falls back to per-row inserts so one bad row never loses
the rest.
"""

import math
from collections import deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

from ..core.config import TickStoreConfig
from ..core.constants import Resolution, TickSource
from ..core.exceptions import StorageError
from ..core.timeframes import iter_periods, parse_timestamp, period_start
from ..core.types import Tick, TickResult, ensure_utc
from ..markets.calendar import MarketCalendar
from ..markets.catalog import SymbolCatalog
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from ..storage.base import TickRepository
from .spike_filter import SpikeFilter


def parse_price(value: Any) -> Optional[Decimal]:
    """Return a positive finite Decimal, or None if ``value`` is not a usable price."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, float):
            if not math.isfinite(value):
                return None
            price = Decimal(str(value))
        else:
            price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class TickStore:
    """
    Ingests ticks and serves them back per minute.

    Uses deque for O(1) append and automatic size limiting; the oldest
    buffered tick is dropped when an instrument's buffer is full.
    """

    def __init__(
        self,
        storage: TickRepository,
        spike_filter: SpikeFilter,
        catalog: SymbolCatalog,
        config: Optional[TickStoreConfig] = None,
        metrics: Optional[MetricsTracker] = None,
        calendar: Optional[MarketCalendar] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.spike_filter = spike_filter
        self.catalog = catalog
        self.config = config or TickStoreConfig()
        self.metrics = metrics or MetricsTracker()
        self.calendar = calendar or MarketCalendar()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.buffers: Dict[str, Deque[Tick]] = {}
        # Ticks taken out of a buffer whose write has not finished yet
        self._in_flight: Dict[str, List[Tick]] = {}

        self.rejections: Dict[str, int] = {}
        self.failed_rows = 0

        self.logger = get_logger(__name__)

    def _buffer(self, instrument: str) -> Deque[Tick]:
        buffer = self.buffers.get(instrument)
        if buffer is None:
            buffer = deque(maxlen=self.config.buffer_size)
            self.buffers[instrument] = buffer
        return buffer

    def _reject(self, reason: str, instrument: str, **details) -> TickResult:
        self.rejections[reason] = self.rejections.get(reason, 0) + 1
        self.metrics.increment('ticks_rejected', label=reason)
        self.logger.debug("Tick rejected", instrument=instrument, reason=reason, **details)
        return TickResult(accepted=False, reason=reason)

    async def add_tick(
        self,
        instrument: str,
        price: Any,
        volume: Any = 0,
        timestamp: Union[datetime, int, float, None] = None,
        source: TickSource = TickSource.LIVE
    ) -> TickResult:
        """
        Validate and buffer one tick.

        Returns:
            TickResult; rejected ticks carry reason ``invalid_price``,
            ``invalid_timestamp``, ``unknown_instrument`` or ``spike``
        """
        self.metrics.increment('ticks_received')

        parsed_price = parse_price(price)
        if parsed_price is None:
            return self._reject("invalid_price", instrument, price=price)

        known = self.catalog.find(instrument)
        if known is None:
            return self._reject("unknown_instrument", instrument)

        ts = parse_timestamp(timestamp) if timestamp is not None else self._clock()
        if ts is None:
            return self._reject("invalid_timestamp", instrument, timestamp=timestamp)

        parsed_volume = parse_price(volume) or Decimal("0")

        spike = self.spike_filter.check(instrument, known.instrument_class, parsed_price, now=ts)
        if not spike.accepted:
            self.rejections["spike"] = self.rejections.get("spike", 0) + 1
            self.metrics.increment('ticks_rejected', label="spike")
            return TickResult(accepted=False, reason="spike", spike=spike)

        self.spike_filter.update_price(instrument, parsed_price, ts)

        tick = Tick(
            instrument=instrument,
            price=parsed_price,
            volume=parsed_volume,
            timestamp=ts,
            source=source,
        )
        buffer = self._buffer(instrument)
        buffer.append(tick)
        self.metrics.increment('ticks_accepted')

        if len(buffer) >= self.config.flush_threshold:
            await self.flush_instrument(instrument)

        return TickResult(accepted=True, tick=tick, spike=spike)

    async def add_ticks(self, ticks: Iterable[Dict[str, Any]]) -> List[TickResult]:
        """Bulk helper: each mapping holds ``add_tick`` keyword arguments."""
        results = []
        for raw in ticks:
            results.append(await self.add_tick(**raw))
        return results

    async def flush_instrument(self, instrument: str) -> int:
        """
        Write the instrument's buffered ticks to storage.

        Returns:
            Number of ticks written
        """
        buffer = self.buffers.get(instrument)
        if not buffer:
            return 0

        pending = list(buffer)
        buffer.clear()
        self._in_flight.setdefault(instrument, []).extend(pending)

        written = 0
        try:
            for i in range(0, len(pending), self.config.batch_size):
                batch = pending[i:i + self.config.batch_size]
                written += await self._write_batch(instrument, batch)
        finally:
            in_flight = self._in_flight.get(instrument, [])
            ids = {id(t) for t in pending}
            self._in_flight[instrument] = [t for t in in_flight if id(t) not in ids]

        if written == 0:
            # Nothing persisted: keep the most recent ticks for the next flush
            buffer = self._buffer(instrument)
            room = buffer.maxlen - len(buffer) if buffer.maxlen is not None else len(pending)
            keep = min(self.config.requeue_on_failure, room)
            # Ticks that arrived during the flush stay; older ones go first
            requeue = pending[len(pending) - keep:] if keep > 0 else []
            buffer.extendleft(reversed(requeue))
            self.logger.error(
                "Tick flush failed, ticks requeued",
                instrument=instrument,
                pending=len(pending),
                requeued=len(requeue)
            )
            return 0

        self.metrics.increment('ticks_flushed', written)
        self.logger.debug("Ticks flushed", instrument=instrument, count=written)
        return written

    async def _write_batch(self, instrument: str, batch: List[Tick]) -> int:
        try:
            return await self.storage.insert_ticks(batch)
        except StorageError as e:
            self.logger.warning(
                "Tick batch insert failed, falling back to row inserts",
                instrument=instrument,
                batch=len(batch),
                error=str(e)
            )

        written = 0
        for tick in batch:
            try:
                await self.storage.insert_tick(tick)
                written += 1
            except StorageError as e:
                self.failed_rows += 1
                self.metrics.increment('tick_write_failures')
                self.logger.error(
                    "Tick insert failed",
                    instrument=instrument,
                    timestamp=tick.timestamp.isoformat(),
                    error=str(e)
                )
        return written

    async def flush_all(self) -> int:
        """Flush every buffer (periodic task and shutdown)."""
        total = 0
        for instrument in list(self.buffers):
            total += await self.flush_instrument(instrument)
        return total

    def _unflushed(self, instrument: str) -> List[Tick]:
        return list(self.buffers.get(instrument, ())) + list(self._in_flight.get(instrument, ()))

    async def get_ticks_for_minute(self, instrument: str, minute_start: datetime) -> List[Tick]:
        """
        Ticks in [minute_start, minute_start + 60s) from buffer and storage.

        Deduplicated on (price, timestamp) and ordered by time.
        """
        start = period_start(minute_start, Resolution.M1)
        return await self.get_ticks(instrument, start, start + timedelta(minutes=1))

    async def get_ticks(self, instrument: str, start: datetime, end: datetime) -> List[Tick]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        stored = await self.storage.get_ticks(instrument, start, end)
        buffered = [t for t in self._unflushed(instrument) if start <= t.timestamp < end]

        seen = set()
        merged = []
        for tick in sorted(stored + buffered, key=lambda t: t.timestamp):
            if tick.dedup_key in seen:
                continue
            seen.add(tick.dedup_key)
            merged.append(tick)
        return merged

    def get_recent_ticks(self, instrument: str, count: int = 100) -> List[Tick]:
        """Get N most recent buffered ticks for instrument."""
        ticks = self._unflushed(instrument)
        ticks.sort(key=lambda t: t.timestamp)
        return ticks[-count:]

    def tick_count(self, instrument: Optional[str] = None) -> int:
        """Number of ticks waiting to be flushed."""
        if instrument is not None:
            return len(self.buffers.get(instrument, ()))
        return sum(len(b) for b in self.buffers.values())

    async def find_missing_minutes(
        self,
        instrument: str,
        lookback: timedelta = timedelta(hours=1),
        now: Optional[datetime] = None
    ) -> List[datetime]:
        """Closed minutes in the lookback window with open market and no ticks."""
        now = ensure_utc(now) if now else self._clock()
        end = period_start(now, Resolution.M1)
        start = end - lookback
        klass = self.catalog.instrument_class(instrument)

        ticks = await self.get_ticks(instrument, start, end)
        covered = {period_start(t.timestamp, Resolution.M1) for t in ticks}

        return [
            minute for minute in iter_periods(start, end, Resolution.M1)
            if minute not in covered and self.calendar.is_open(klass, minute).open
        ]

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete persisted ticks older than the retention window."""
        now = ensure_utc(now) if now else self._clock()
        cutoff = now - timedelta(hours=self.config.retention_hours)
        deleted = await self.storage.delete_ticks_before(cutoff)
        self.logger.info("Old ticks deleted", count=deleted, cutoff=cutoff.isoformat())
        return deleted

    def get_stats(self) -> dict:
        return {
            'buffered': self.tick_count(),
            'buffers': {k: len(v) for k, v in self.buffers.items()},
            'rejections': dict(self.rejections),
            'failed_rows': self.failed_rows,
        }
