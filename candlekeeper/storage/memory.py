"""
In-process storage backend.

Used by tests and single-process dry runs. No method awaits between reading
and writing a row, so every write is atomic with respect to other tasks on
the event loop.
"""

from bisect import bisect_left, insort
from dataclasses import replace
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.constants import BackfillStatus, CandleOrigin, Resolution
from ..core.exceptions import StorageError
from ..core.types import BackfillItem, Candle, IntegrityRecord, Tick, ensure_utc
from .base import Storage, merge_accumulate


class MemoryStorage(Storage):
    """Dictionary-backed implementation of every repository."""

    def __init__(self):
        self._candles: Dict[Tuple[str, Resolution], Dict[datetime, Candle]] = defaultdict(dict)
        self._ticks: Dict[str, List[Tuple[datetime, int, Tick]]] = defaultdict(list)
        self._tick_seq = 0
        self._queue: Dict[int, BackfillItem] = {}
        self._queue_keys: Dict[tuple, int] = {}
        self._next_id = 1
        self._integrity: Dict[tuple, IntegrityRecord] = {}

        # Write counters, handy in tests
        self.candle_writes = 0
        self.tick_writes = 0

    # ── Candles ──────────────────────────────────────────

    async def get_candle(self, instrument, resolution, period_start) -> Optional[Candle]:
        candle = self._candles[(instrument, resolution)].get(ensure_utc(period_start))
        return candle.copy() if candle else None

    async def get_candles(self, instrument, resolution, start, end) -> List[Candle]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        series = self._candles[(instrument, resolution)]
        return [
            series[ts].copy()
            for ts in sorted(series)
            if start <= ts < end
        ]

    async def get_latest_candle(self, instrument, resolution) -> Optional[Candle]:
        series = self._candles[(instrument, resolution)]
        if not series:
            return None
        return series[max(series)].copy()

    async def accumulate_candle(self, candle: Candle) -> Candle:
        series = self._candles[(candle.instrument, candle.resolution)]
        merged = merge_accumulate(series.get(candle.period_start), candle)
        series[candle.period_start] = merged
        self.candle_writes += 1
        return merged.copy()

    async def upsert_candle(self, candle: Candle, preserve_origin: Optional[CandleOrigin] = None) -> bool:
        series = self._candles[(candle.instrument, candle.resolution)]
        existing = series.get(candle.period_start)
        if existing is not None and preserve_origin is not None and existing.origin == preserve_origin:
            return False
        series[candle.period_start] = candle.copy()
        self.candle_writes += 1
        return True

    async def upsert_candles(self, candles: Sequence[Candle]) -> int:
        for candle in candles:
            self._candles[(candle.instrument, candle.resolution)][candle.period_start] = candle.copy()
        self.candle_writes += len(candles)
        return len(candles)

    async def get_recent_closes(self, resolution, since) -> Dict[str, List[Tuple[datetime, float]]]:
        since = ensure_utc(since)
        closes: Dict[str, List[Tuple[datetime, float]]] = {}
        for (instrument, res), series in self._candles.items():
            if res != resolution:
                continue
            rows = [(ts, float(series[ts].close)) for ts in sorted(series) if ts >= since]
            if rows:
                closes[instrument] = rows
        return closes

    # ── Ticks ────────────────────────────────────────────

    async def insert_ticks(self, ticks: Sequence[Tick]) -> int:
        for tick in ticks:
            self._append_tick(tick)
        return len(ticks)

    async def insert_tick(self, tick: Tick) -> None:
        self._append_tick(tick)

    def _append_tick(self, tick: Tick) -> None:
        self._tick_seq += 1
        insort(self._ticks[tick.instrument], (tick.timestamp, self._tick_seq, tick))
        self.tick_writes += 1

    async def get_ticks(self, instrument, start, end) -> List[Tick]:
        rows = self._ticks.get(instrument, [])
        lo = bisect_left(rows, (ensure_utc(start), 0))
        hi = bisect_left(rows, (ensure_utc(end), 0))
        return [tick for _, _, tick in rows[lo:hi]]

    async def delete_ticks_before(self, cutoff) -> int:
        cutoff = ensure_utc(cutoff)
        deleted = 0
        for instrument, rows in self._ticks.items():
            idx = bisect_left(rows, (cutoff, 0))
            deleted += idx
            self._ticks[instrument] = rows[idx:]
        return deleted

    # ── Backfill queue ───────────────────────────────────

    async def enqueue(self, item: BackfillItem) -> BackfillItem:
        key = item.range_key
        if key in self._queue_keys:
            existing = self._queue[self._queue_keys[key]]
            existing.priority = max(existing.priority, item.priority)
            if existing.status == BackfillStatus.COMPLETED:
                # The range is still missing after an earlier heal
                existing.status = BackfillStatus.PENDING
                existing.attempts = 0
            return _copy_item(existing)

        stored = _copy_item(item)
        stored.id = self._next_id
        self._next_id += 1
        self._queue[stored.id] = stored
        self._queue_keys[key] = stored.id
        return _copy_item(stored)

    async def claim_pending(self, limit: int, now: datetime) -> List[BackfillItem]:
        pending = sorted(
            (i for i in self._queue.values() if i.status == BackfillStatus.PENDING),
            key=lambda i: (-i.priority, i.created_at, i.id)
        )[:limit]
        for item in pending:
            item.status = BackfillStatus.PROCESSING
            item.last_attempt_at = ensure_utc(now)
        return [_copy_item(i) for i in pending]

    async def mark_completed(self, item_id: int) -> None:
        item = self._require(item_id)
        item.status = BackfillStatus.COMPLETED
        item.last_error = None

    async def mark_failed(self, item_id: int, error: str, max_attempts: int) -> BackfillStatus:
        item = self._require(item_id)
        item.attempts += 1
        item.last_error = error
        item.status = BackfillStatus.FAILED if item.attempts >= max_attempts else BackfillStatus.PENDING
        return item.status

    async def get_item(self, item_id: int) -> Optional[BackfillItem]:
        item = self._queue.get(item_id)
        return _copy_item(item) if item else None

    async def list_items(self, status: Optional[BackfillStatus] = None) -> List[BackfillItem]:
        items = [i for i in self._queue.values() if status is None or i.status == status]
        items.sort(key=lambda i: (-i.priority, i.created_at, i.id))
        return [_copy_item(i) for i in items]

    async def count_by_status(self) -> Dict[BackfillStatus, int]:
        counts = {status: 0 for status in BackfillStatus}
        for item in self._queue.values():
            counts[item.status] += 1
        return counts

    async def release_item(self, item_id: int) -> None:
        item = self._require(item_id)
        if item.status == BackfillStatus.PROCESSING:
            item.status = BackfillStatus.PENDING

    async def release_processing(self) -> int:
        released = 0
        for item in self._queue.values():
            if item.status == BackfillStatus.PROCESSING:
                item.status = BackfillStatus.PENDING
                released += 1
        return released

    async def delete_completed_before(self, cutoff) -> int:
        cutoff = ensure_utc(cutoff)
        doomed = [
            i for i in self._queue.values()
            if i.status == BackfillStatus.COMPLETED and i.created_at < cutoff
        ]
        for item in doomed:
            del self._queue[item.id]
            del self._queue_keys[item.range_key]
        return len(doomed)

    def _require(self, item_id: int) -> BackfillItem:
        try:
            return self._queue[item_id]
        except KeyError:
            raise StorageError("Unknown backfill item", item_id=item_id) from None

    # ── Integrity ────────────────────────────────────────

    async def upsert_integrity(self, records: Sequence[IntegrityRecord]) -> int:
        for record in records:
            self._integrity[(record.instrument, record.resolution, record.day)] = record
        return len(records)

    async def get_integrity(self, instrument=None, resolution=None) -> List[IntegrityRecord]:
        return [
            r for key, r in sorted(self._integrity.items(), key=lambda kv: (kv[0][0], kv[0][1].seconds, kv[0][2]))
            if (instrument is None or r.instrument == instrument)
            and (resolution is None or r.resolution == resolution)
        ]


def _copy_item(item: BackfillItem) -> BackfillItem:
    return replace(item)
