"""
Storage interfaces.

The engine depends only on these abstract repositories. Every method that
writes a candle is a single atomic operation on the backing store, so
callers never hold a lock across an await.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ..core.constants import BackfillStatus, CandleOrigin, Resolution
from ..core.types import BackfillItem, Candle, IntegrityRecord, Tick


class CandleRepository(ABC):
    """Candle persistence keyed by (instrument, resolution, period_start)."""

    @abstractmethod
    async def get_candle(
        self,
        instrument: str,
        resolution: Resolution,
        period_start: datetime
    ) -> Optional[Candle]:
        pass

    @abstractmethod
    async def get_candles(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Candle]:
        """Candles with ``start <= period_start < end``, ascending."""

    @abstractmethod
    async def get_latest_candle(self, instrument: str, resolution: Resolution) -> Optional[Candle]:
        pass

    @abstractmethod
    async def accumulate_candle(self, candle: Candle) -> Candle:
        """
        Merge ``candle`` into the stored row in one atomic step.

        high=max, low=min, close=new, volume+=new, source_count+=new. The
        first write of a key inserts the candle as is. A row with
        ``origin=backfill`` is never modified.

        Returns:
            The row as stored after the merge
        """

    @abstractmethod
    async def upsert_candle(
        self,
        candle: Candle,
        preserve_origin: Optional[CandleOrigin] = None
    ) -> bool:
        """
        Replace every field of the stored row.

        Args:
            candle: Candle to write
            preserve_origin: If the stored row has this origin, leave it untouched

        Returns:
            True if the row was written
        """

    @abstractmethod
    async def upsert_candles(self, candles: Sequence[Candle]) -> int:
        """Overwrite a batch of candles; returns the number written."""

    @abstractmethod
    async def get_recent_closes(
        self,
        resolution: Resolution,
        since: datetime
    ) -> Dict[str, List[Tuple[datetime, float]]]:
        """Closes per instrument since ``since``, ascending by time."""

    async def get_candles_frame(
        self,
        instrument: str,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> pd.DataFrame:
        """Candles in [start, end) as a DataFrame indexed by period_start."""
        candles = await self.get_candles(instrument, resolution, start, end)
        return candles_to_frame(candles)


class TickRepository(ABC):
    """Append-only tick persistence."""

    @abstractmethod
    async def insert_ticks(self, ticks: Sequence[Tick]) -> int:
        """
        Append ticks in one batch.

        Raises:
            StorageError: if the batch cannot be written
        """

    @abstractmethod
    async def insert_tick(self, tick: Tick) -> None:
        """
        Raises:
            StorageError: if the tick cannot be written
        """

    @abstractmethod
    async def get_ticks(self, instrument: str, start: datetime, end: datetime) -> List[Tick]:
        """Stored ticks with ``start <= timestamp < end``, ascending."""

    @abstractmethod
    async def delete_ticks_before(self, cutoff: datetime) -> int:
        pass


class QueueRepository(ABC):
    """Backfill work queue."""

    @abstractmethod
    async def enqueue(self, item: BackfillItem) -> BackfillItem:
        """
        Insert an item, unique on (instrument, resolution, gap_start, gap_end).

        An existing item keeps its status, except that a completed range
        goes back to pending with its attempts reset; its priority becomes
        the max of both.
        """

    @abstractmethod
    async def claim_pending(self, limit: int, now: datetime) -> List[BackfillItem]:
        """
        Atomically move up to ``limit`` pending items to processing.

        Items are claimed by priority (highest first) then creation time.
        """

    @abstractmethod
    async def mark_completed(self, item_id: int) -> None:
        pass

    @abstractmethod
    async def mark_failed(self, item_id: int, error: str, max_attempts: int) -> BackfillStatus:
        """
        Record a failed attempt.

        Returns:
            PENDING while attempts < max_attempts, FAILED afterwards
        """

    @abstractmethod
    async def get_item(self, item_id: int) -> Optional[BackfillItem]:
        pass

    @abstractmethod
    async def list_items(self, status: Optional[BackfillStatus] = None) -> List[BackfillItem]:
        pass

    @abstractmethod
    async def count_by_status(self) -> Dict[BackfillStatus, int]:
        pass

    @abstractmethod
    async def release_item(self, item_id: int) -> None:
        """Return a claimed item to pending without counting an attempt."""

    @abstractmethod
    async def release_processing(self) -> int:
        """Return items stuck in processing (e.g. after a crash) to pending."""

    @abstractmethod
    async def delete_completed_before(self, cutoff: datetime) -> int:
        pass


class IntegrityRepository(ABC):
    """Per-day integrity rollups."""

    @abstractmethod
    async def upsert_integrity(self, records: Sequence[IntegrityRecord]) -> int:
        pass

    @abstractmethod
    async def get_integrity(
        self,
        instrument: Optional[str] = None,
        resolution: Optional[Resolution] = None
    ) -> List[IntegrityRecord]:
        pass


class Storage(CandleRepository, TickRepository, QueueRepository, IntegrityRepository):
    """A backend implementing every repository."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass


def merge_accumulate(existing: Optional[Candle], incoming: Candle) -> Candle:
    """Result of an accumulate write of ``incoming`` over ``existing``."""
    if existing is None:
        return incoming.copy()
    if existing.origin == CandleOrigin.BACKFILL:
        return existing
    return existing.copy(
        high=max(existing.high, incoming.high),
        low=min(existing.low, incoming.low),
        close=incoming.close,
        volume=existing.volume + incoming.volume,
        source_count=existing.source_count + incoming.source_count,
        is_complete=incoming.is_complete,
    )


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert candles to a DataFrame indexed by period_start."""
    columns = ["open", "high", "low", "close", "volume", "origin", "is_complete", "source_count"]
    if not candles:
        frame = pd.DataFrame(columns=columns)
        frame.index = pd.DatetimeIndex([], tz="UTC", name="period_start")
        return frame

    frame = pd.DataFrame([
        {
            "period_start": c.period_start,
            "open": float(c.open),
            "high": float(c.high),
            "low": float(c.low),
            "close": float(c.close),
            "volume": float(c.volume),
            "origin": c.origin.value,
            "is_complete": c.is_complete,
            "source_count": c.source_count,
        }
        for c in candles
    ])
    frame["period_start"] = pd.to_datetime(frame["period_start"], utc=True)
    return frame.set_index("period_start").sort_index()
