"""
Scheduler - Runs periodic engine tasks.

Each task has an interval and a coroutine factory. ``run_due`` starts every
due task concurrently and waits for them, which lets tests drive the engine
with a fake clock. ``run_forever`` is the production loop.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ScheduledTask:
    """
    A periodic job.

    Attributes:
        name: Unique task name (used in logs and metrics)
        interval: Time between runs
        factory: Returns a fresh coroutine for every run
        align: Run on interval boundaries (e.g. every full 5 minutes)
            plus ``delay`` instead of relative to the previous run
        delay: Offset after an aligned boundary
        after: Name of a task whose in-flight run must finish before this
            one starts its work
    """
    name: str
    interval: timedelta
    factory: Callable[[], Awaitable[object]]
    align: bool = False
    delay: timedelta = timedelta(0)
    after: Optional[str] = None

    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    running: bool = False
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    job: Optional[asyncio.Future] = field(default=None, repr=False)

    def is_due(self, now: datetime) -> bool:
        return not self.running and (self.next_run is None or now >= self.next_run)

    def schedule_next(self, now: datetime) -> None:
        if self.align:
            step = int(self.interval.total_seconds())
            elapsed = int((now - self.delay - _EPOCH).total_seconds())
            boundary = _EPOCH + timedelta(seconds=elapsed - elapsed % step)
            self.next_run = boundary + self.interval + self.delay
        else:
            self.next_run = now + self.interval


class Scheduler:
    """Ordered set of periodic tasks."""

    def __init__(
        self,
        metrics: Optional[MetricsTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tick_seconds: float = 1.0
    ):
        self.metrics = metrics or MetricsTracker()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.tick_seconds = tick_seconds

        self.tasks: Dict[str, ScheduledTask] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self.logger = get_logger(__name__)

    def add(
        self,
        name: str,
        interval: timedelta,
        factory: Callable[[], Awaitable[object]],
        align: bool = False,
        delay: timedelta = timedelta(0),
        after: Optional[str] = None
    ) -> ScheduledTask:
        if name in self.tasks:
            raise ValueError(f"Task already scheduled: {name}")
        if interval <= timedelta(0):
            raise ValueError(f"Task interval must be positive: {name}")
        if after is not None and after not in self.tasks:
            raise ValueError(f"Unknown dependency for {name}: {after}")
        task = ScheduledTask(
            name=name, interval=interval, factory=factory, align=align, delay=delay, after=after
        )
        self.tasks[name] = task
        return task

    def due(self, now: datetime) -> List[ScheduledTask]:
        return [t for t in self.tasks.values() if t.is_due(now)]

    def start_due(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """Start every due task in the background; running tasks are not started twice.

        Tasks start in the order they were added, so a dependency started in
        the same tick is always in flight before its dependents.
        """
        now = now or self._clock()
        started = []
        for task in self.due(now):
            task.running = True
            task.schedule_next(now)
            job = asyncio.ensure_future(self._run(task, now))
            task.job = job
            self._in_flight.add(job)
            job.add_done_callback(self._in_flight.discard)
            started.append(job)
        return started

    async def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run every due task concurrently and wait for all of them.

        Returns:
            Names of the tasks that ran
        """
        now = now or self._clock()
        names = [t.name for t in self.due(now)]
        jobs = self.start_due(now)
        if jobs:
            await asyncio.gather(*jobs)
        return names

    async def _run(self, task: ScheduledTask, now: datetime) -> None:
        try:
            dependency = self.tasks.get(task.after) if task.after else None
            if dependency is not None and dependency.job is not None and not dependency.job.done():
                await dependency.job
            await task.factory()
            task.last_error = None
        except Exception as e:
            task.failures += 1
            task.last_error = str(e)
            self.metrics.increment('task_failures', label=task.name)
            self.logger.error(
                "Scheduled task failed",
                task=task.name,
                error=str(e),
                exc_info=True
            )
        finally:
            task.running = False
            task.runs += 1
            task.last_run = now

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Tick until ``stop_event`` is set, then wait for in-flight tasks."""
        self.logger.info("Scheduler started", tasks=len(self.tasks))
        while not stop_event.is_set():
            self.start_due()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

        await self.wait_in_flight()
        self.logger.info("Scheduler stopped")

    async def wait_in_flight(self) -> None:
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight))

    def get_status(self) -> dict:
        return {
            name: {
                'running': t.running,
                'runs': t.runs,
                'failures': t.failures,
                'last_error': t.last_error,
                'next_run': t.next_run.isoformat() if t.next_run else None,
            }
            for name, t in self.tasks.items()
        }
