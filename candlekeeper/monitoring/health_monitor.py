"""
Health Monitor - Periodic data quality and liveness check.

Checks:
1. Data freshness of every primary instrument (latest base candle age)
2. Share of incomplete base candles over the last 24 hours
3. Backfill queue depth (pending and failed items)
4. Circuit breaker state
5. Feed connectivity

Every problem becomes one human readable issue string; no issues means
the engine is healthy.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..core.config import MonitoringConfig
from ..core.constants import BASE_RESOLUTION
from ..core.exceptions import StorageError
from ..core.types import ensure_utc
from ..markets.calendar import MarketCalendar
from ..markets.catalog import SymbolCatalog
from ..storage.base import CandleRepository
from .logger import get_logger
from .metrics_tracker import MetricsTracker


class HealthMonitor:
    """Builds health reports for the running engine."""

    def __init__(
        self,
        storage: CandleRepository,
        catalog: SymbolCatalog,
        calendar: Optional[MarketCalendar] = None,
        config: Optional[MonitoringConfig] = None,
        metrics: Optional[MetricsTracker] = None,
        queue=None,
        breaker=None,
        feed=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            queue: BackfillQueue (optional)
            breaker: CircuitBreaker guarding provider calls (optional)
            feed: FeedClient (optional; None means no live feed is configured)
        """
        self.storage = storage
        self.catalog = catalog
        self.calendar = calendar or MarketCalendar()
        self.config = config or MonitoringConfig()
        self.metrics = metrics or MetricsTracker()
        self.queue = queue
        self.breaker = breaker
        self.feed = feed
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.last_report: Optional[Dict[str, Any]] = None
        self.logger = get_logger(__name__)

    async def check(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run every check and return the report."""
        now = ensure_utc(now) if now else self._clock()
        issues: List[str] = []

        try:
            freshness = await self.check_freshness(now, issues)
            incomplete = await self.check_incomplete(now, issues)
        except StorageError as e:
            issues.append(f"Storage: {e}")
            freshness, incomplete = {}, {}

        queue = await self.check_queue(issues)
        breaker = self.check_breaker(issues)
        feed = self.check_feed(issues)

        report = {
            'timestamp': now.isoformat(),
            'overall': 'healthy' if not issues else 'degraded',
            'issues': issues,
            'freshness': freshness,
            'incomplete': incomplete,
            'queue': queue,
            'circuit_breaker': breaker,
            'feed': feed,
        }
        self.last_report = report
        self.metrics.record_health({'overall': report['overall'], 'issues': list(issues)})

        if issues:
            self.logger.warning("Health check degraded", issues=len(issues), first=issues[0])
        else:
            self.logger.info("Health check passed")
        return report

    async def check_freshness(self, now: datetime, issues: List[str]) -> Dict[str, Dict[str, Any]]:
        stale_after = timedelta(minutes=self.config.stale_data_minutes)
        results = {}

        for instrument in self.catalog.primary:
            if not self.calendar.is_open(instrument.instrument_class, now).open:
                results[instrument.code] = {'status': 'market_closed'}
                continue

            latest = await self.storage.get_latest_candle(instrument.code, BASE_RESOLUTION)
            if latest is None:
                results[instrument.code] = {'status': 'no_data'}
                issues.append(f"{instrument.code}: No {BASE_RESOLUTION.value} data")
                continue

            age = now - latest.period_end
            stale = age > stale_after
            results[instrument.code] = {
                'status': 'stale' if stale else 'fresh',
                'latest': latest.period_start.isoformat(),
                'age_seconds': int(age.total_seconds()),
            }
            if stale:
                issues.append(f"{instrument.code}: Data is {int(age.total_seconds() // 60)} minutes old")

        return results

    async def check_incomplete(self, now: datetime, issues: List[str]) -> Dict[str, Dict[str, Any]]:
        """Percent of flat or incomplete base candles over the last 24 hours."""
        results = {}
        for instrument in self.catalog.primary:
            frame = await self.storage.get_candles_frame(
                instrument.code, BASE_RESOLUTION, now - timedelta(hours=24), now
            )
            total = len(frame)
            if total == 0:
                results[instrument.code] = {'total': 0, 'incomplete': 0, 'percent': 0.0}
                continue

            flat = (frame["open"] == frame["high"]) & (frame["high"] == frame["low"]) & (frame["low"] == frame["close"])
            incomplete = int((flat | ~frame["is_complete"].astype(bool)).sum())
            percent = incomplete / total * 100
            results[instrument.code] = {'total': total, 'incomplete': incomplete, 'percent': round(percent, 2)}

            if percent > self.config.max_incomplete_percent:
                issues.append(f"{instrument.code}: {percent:.1f}% incomplete candles")
        return results

    async def check_queue(self, issues: List[str]) -> Dict[str, int]:
        if self.queue is None:
            return {}
        try:
            counts = await self.queue.counts()
        except StorageError as e:
            issues.append(f"Backfill queue: {e}")
            return {}

        if counts.get('pending', 0) > self.config.max_pending_items:
            issues.append(f"Backfill queue: {counts['pending']} pending items")
        if counts.get('failed', 0) > self.config.max_failed_items:
            issues.append(f"Backfill queue: {counts['failed']} failed items")
        return counts

    def check_breaker(self, issues: List[str]) -> Dict[str, Any]:
        if self.breaker is None:
            return {}
        status = self.breaker.get_status()
        self.metrics.set_circuit_state(status)
        if status['open']:
            issues.append(
                f"Circuit breaker open: {status['cooldown_remaining_seconds']}s remaining"
            )
        return status

    def check_feed(self, issues: List[str]) -> Dict[str, Any]:
        if self.feed is None:
            return {'configured': False}
        connected = self.feed.is_connected
        if not connected:
            issues.append("Feed: disconnected")
        return {'configured': True, 'connected': connected}
