"""
Backfill Queue - Prioritized healing work items.

Thin policy layer over a ``QueueRepository``: gaps become items, items are
claimed atomically, and failed attempts are retried until ``max_attempts``.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from ..core.constants import BackfillStatus, MAX_BACKFILL_ATTEMPTS, MAX_PRIORITY, Resolution
from ..core.types import BackfillItem, Gap, ensure_utc
from ..monitoring.logger import get_logger
from ..storage.base import QueueRepository


class BackfillQueue:
    """Priority queue of gap ranges to heal."""

    def __init__(
        self,
        repository: QueueRepository,
        max_attempts: int = MAX_BACKFILL_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(__name__)

    async def enqueue(
        self,
        instrument: str,
        resolution: Resolution,
        gap_start: datetime,
        gap_end: datetime,
        priority: int = 5
    ) -> BackfillItem:
        """
        Queue a range.

        An already queued range gets the higher priority and keeps its status,
        except a completed one, which is queued again.
        """
        item = BackfillItem(
            instrument=instrument,
            resolution=resolution,
            gap_start=gap_start,
            gap_end=gap_end,
            priority=max(0, min(MAX_PRIORITY, priority)),
            created_at=self._clock(),
        )
        stored = await self.repository.enqueue(item)
        self.logger.debug(
            "Backfill queued",
            id=stored.id,
            instrument=instrument,
            resolution=resolution.value,
            start=item.gap_start.isoformat(),
            end=item.gap_end.isoformat(),
            priority=stored.priority
        )
        return stored

    async def enqueue_gap(self, gap: Gap, priority: int = 5) -> BackfillItem:
        return await self.enqueue(gap.instrument, gap.resolution, gap.start, gap.end, priority)

    async def enqueue_gaps(self, gaps: Iterable[Gap], priority: int = 5) -> List[BackfillItem]:
        return [await self.enqueue_gap(g, priority) for g in gaps]

    async def claim(self, limit: int) -> List[BackfillItem]:
        """Claim up to ``limit`` pending items, highest priority first."""
        return await self.repository.claim_pending(limit, self._clock())

    async def complete(self, item: BackfillItem) -> None:
        await self.repository.mark_completed(item.id)

    async def fail(self, item: BackfillItem, error: str) -> BackfillStatus:
        """Record a failed attempt; the item goes back to pending or ends up failed."""
        status = await self.repository.mark_failed(item.id, error, self.max_attempts)
        if status == BackfillStatus.FAILED:
            self.logger.error(
                "Backfill item failed permanently",
                id=item.id,
                instrument=item.instrument,
                resolution=item.resolution.value,
                start=item.gap_start.isoformat(),
                end=item.gap_end.isoformat(),
                error=error
            )
        return status

    async def release(self, item: BackfillItem) -> BackfillStatus:
        """Put a claimed item back to pending without spending an attempt."""
        await self.repository.release_item(item.id)
        return BackfillStatus.PENDING

    async def recover(self) -> int:
        """Release items left in processing by a previous run."""
        released = await self.repository.release_processing()
        if released:
            self.logger.warning("Released stale processing items", count=released)
        return released

    async def counts(self) -> Dict[str, int]:
        counts = await self.repository.count_by_status()
        return {status.value: counts.get(status, 0) for status in BackfillStatus}

    async def items(self, status: Optional[BackfillStatus] = None) -> List[BackfillItem]:
        return await self.repository.list_items(status)

    async def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete completed items older than ``retention_days``."""
        now = ensure_utc(now) if now else self._clock()
        return await self.repository.delete_completed_before(now - timedelta(days=retention_days))
