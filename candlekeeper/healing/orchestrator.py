"""
Healing Orchestrator - Keeps the stored series complete and correct.

Healing paths:
1. Heal windows: re-fetch the most recent closed window of base candles per
   instrument (primary tier often, secondary tier less often)
2. Recent gap scan: queue fixable gaps of the last hour at top priority
3. Queue drain: heal queued ranges, highest priority first
4. Integrity sweep: daily gap + suspect scan over the lookback, queued at
   lower priority, plus per-day integrity rollups

Every path heals a range the same way: fetch from the providers, save each
candle with OVERWRITE, rebuild all higher resolutions over the span. A
circuit breaker guards provider calls across all paths.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..core.config import HealingConfig
from ..core.constants import (
    BASE_RESOLUTION, BackfillStatus, InstrumentTier, PRIORITY_INTEGRITY_GAP,
    PRIORITY_RECENT_GAP, PRIORITY_SUSPECT_CANDLE, GapDisposition, Resolution, WriteMode,
)
from ..core.exceptions import (
    CircuitOpenError, InvalidCandleError, ProviderError, StorageError,
    UnsupportedInstrumentError,
)
from ..core.timeframes import period_start
from ..core.types import BackfillItem, Instrument, ensure_utc
from ..data.candle_builder import CandleBuilder
from ..data.gap_detector import GapDetector
from ..data.spike_filter import SpikeFilter
from ..data.tick_store import TickStore
from ..markets.calendar import MarketCalendar
from ..markets.catalog import SymbolCatalog
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from ..providers.backfill import BackfillProvider
from ..storage.base import IntegrityRepository
from .backfill_queue import BackfillQueue
from .circuit_breaker import CircuitBreaker


@dataclass
class HealResult:
    """Outcome of healing one range."""
    instrument: str
    resolution: Resolution
    start: datetime
    end: datetime
    fetched: int = 0
    saved: int = 0
    rebuilt: int = 0
    skipped: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.skipped is None


class HealingOrchestrator:
    """
    Fetch, overwrite and rebuild.

    Per-instrument failures are logged and never stop the rest of a pass.
    """

    def __init__(
        self,
        catalog: SymbolCatalog,
        provider: BackfillProvider,
        builder: CandleBuilder,
        detector: GapDetector,
        queue: BackfillQueue,
        breaker: CircuitBreaker,
        spike_filter: Optional[SpikeFilter] = None,
        tick_store: Optional[TickStore] = None,
        integrity: Optional[IntegrityRepository] = None,
        calendar: Optional[MarketCalendar] = None,
        config: Optional[HealingConfig] = None,
        metrics: Optional[MetricsTracker] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.catalog = catalog
        self.provider = provider
        self.builder = builder
        self.detector = detector
        self.queue = queue
        self.breaker = breaker
        self.spike_filter = spike_filter
        self.tick_store = tick_store
        self.integrity = integrity
        self.calendar = calendar or MarketCalendar()
        self.config = config or HealingConfig()
        self.metrics = metrics or MetricsTracker()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # instrument -> end of the last healed window
        self.last_healed: Dict[str, datetime] = {}
        self.logger = get_logger(__name__)

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now else self._clock()

    @property
    def provider_delay(self) -> timedelta:
        return timedelta(minutes=self.detector.config.provider_delay_minutes)

    # ── Core heal ────────────────────────────────────────

    async def heal_range(
        self,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None
    ) -> HealResult:
        """
        Fetch [start, end), overwrite every fetched candle and rebuild upward.

        Raises:
            CircuitOpenError: if the breaker forbids provider calls
            ProviderError: if the fetch failed (already counted by the breaker)
        """
        now = self._now(now)
        result = HealResult(instrument.code, resolution, ensure_utc(start), ensure_utc(end))

        allowed, reason = self.breaker.is_call_allowed()
        if not allowed:
            raise CircuitOpenError(reason, instrument=instrument.code)

        trips = self.breaker.trips
        try:
            candles = await self.provider.fetch_range(instrument, resolution, result.start, result.end)
        except UnsupportedInstrumentError:
            raise
        except ProviderError as e:
            self.breaker.record_failure(f"{type(e).__name__}: {e}")
            if self.breaker.trips > trips:
                self.metrics.increment('circuit_breaker_trips')
            self.metrics.set_circuit_state(self.breaker.get_status())
            self.metrics.record_heal(
                instrument.code, resolution.value, result.start, result.end, 0, False, str(e)
            )
            raise
        self.breaker.record_success()
        self.metrics.set_circuit_state(self.breaker.get_status())

        result.fetched = len(candles)
        if not candles:
            self.logger.warning(
                "Provider returned no data",
                instrument=instrument.code,
                resolution=resolution.value,
                start=result.start.isoformat(),
                end=result.end.isoformat()
            )
            self.metrics.record_heal(instrument.code, resolution.value, result.start, result.end, 0, True)
            return result

        for candle in candles:
            try:
                if await self.builder.save(candle, WriteMode.OVERWRITE, now=now):
                    result.saved += 1
            except InvalidCandleError as e:
                self.logger.warning("Healed candle rejected", instrument=instrument.code, error=str(e))

        rebuilt = await self.builder.rebuild_upward(
            instrument.code, result.start, result.end, from_resolution=resolution, now=now
        )
        result.rebuilt = sum(1 for r in rebuilt if r.candle is not None)

        self.metrics.increment('candles_healed', result.saved, label=resolution.value)
        self.metrics.record_heal(
            instrument.code, resolution.value, result.start, result.end, result.saved, True
        )

        # A heal that reaches the present window replaces the spike reference
        if (
            self.spike_filter is not None
            and resolution == BASE_RESOLUTION
            and result.end >= now - self.provider_delay - timedelta(minutes=self.config.window_minutes)
        ):
            last = candles[-1]
            self.spike_filter.reset(instrument.code, last.close, last.period_end)

        self.logger.info(
            "Range healed",
            instrument=instrument.code,
            resolution=resolution.value,
            start=result.start.isoformat(),
            end=result.end.isoformat(),
            fetched=result.fetched,
            saved=result.saved,
            rebuilt=result.rebuilt
        )
        return result

    # ── Heal windows ─────────────────────────────────────

    async def heal_window(self, instrument: Instrument, now: Optional[datetime] = None) -> HealResult:
        """
        Heal ``[now - delay - window, now - delay)``.

        A span the provider delivered is not fetched again on the next pass;
        an empty answer leaves it to be retried.
        """
        now = self._now(now)
        end = period_start(now - self.provider_delay, BASE_RESOLUTION)
        start = end - timedelta(minutes=self.config.window_minutes)

        last = self.last_healed.get(instrument.code)
        if last is not None and last > start:
            start = last

        result = HealResult(instrument.code, BASE_RESOLUTION, start, end)

        if not self.calendar.is_open(instrument.instrument_class, now).open:
            result.skipped = "market_closed"
            return result
        if start >= end:
            result.skipped = "already_healed"
            return result
        if not self.provider.supports(instrument, BASE_RESOLUTION):
            result.skipped = "unsupported"
            return result

        result = await self.heal_range(instrument, BASE_RESOLUTION, start, end, now)
        if result.fetched:
            self.last_healed[instrument.code] = end
        return result

    async def heal_tier(self, tier: InstrumentTier, now: Optional[datetime] = None) -> List[HealResult]:
        """Heal window for every instrument of a tier; stops issuing calls once the breaker opens."""
        now = self._now(now)
        results = []
        for instrument in self.catalog.tier(tier):
            try:
                results.append(await self.heal_window(instrument, now))
            except CircuitOpenError as e:
                self.logger.warning("Heal pass stopped", tier=tier.value, reason=str(e))
                break
            except (ProviderError, StorageError) as e:
                self.logger.error(
                    "Heal window failed",
                    instrument=instrument.code,
                    resolution=BASE_RESOLUTION.value,
                    error=str(e)
                )
                results.append(HealResult(
                    instrument.code, BASE_RESOLUTION, now, now, error=str(e)
                ))
        return results

    # ── Queue ────────────────────────────────────────────

    async def process_item(self, item: BackfillItem, now: Optional[datetime] = None) -> BackfillStatus:
        """Heal one claimed queue item and record the outcome."""
        now = self._now(now)
        context = dict(
            id=item.id,
            instrument=item.instrument,
            resolution=item.resolution.value,
            start=item.gap_start.isoformat(),
            end=item.gap_end.isoformat()
        )

        try:
            instrument = self.catalog.get(item.instrument)
            await self.heal_range(instrument, item.resolution, item.gap_start, item.gap_end, now)
        except CircuitOpenError as e:
            # Breaker opened by a concurrent heal pass after the claim
            status = await self.queue.release(item)
            self.logger.warning("Backfill deferred", reason=str(e), **context)
            return status
        except (ProviderError, StorageError) as e:
            status = await self.queue.fail(item, str(e))
            self.logger.error("Backfill attempt failed", error=str(e), status=status.value, **context)
            return status
        except Exception as e:
            status = await self.queue.fail(item, f"{type(e).__name__}: {e}")
            self.logger.error("Backfill attempt crashed", error=str(e), exc_info=True, **context)
            return status

        await self.queue.complete(item)
        return BackfillStatus.COMPLETED

    async def drain_queue(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Process up to ``limit`` queued items, one claim at a time.

        No item is claimed while the circuit breaker is open.
        """
        now = self._now(now)
        limit = limit or self.config.batch_limit
        outcome = {'processed': 0, 'completed': 0, 'retry': 0, 'failed': 0}

        while outcome['processed'] < limit:
            allowed, reason = self.breaker.is_call_allowed()
            if not allowed:
                self.logger.warning("Queue drain paused", reason=reason)
                break

            claimed = await self.queue.claim(1)
            if not claimed:
                break

            status = await self.process_item(claimed[0], now)
            outcome['processed'] += 1
            if status == BackfillStatus.COMPLETED:
                outcome['completed'] += 1
            elif status == BackfillStatus.PENDING:
                outcome['retry'] += 1
            else:
                outcome['failed'] += 1

        if outcome['processed']:
            self.logger.info("Queue drained", **outcome)
        return outcome

    # ── Scans ────────────────────────────────────────────

    async def scan_recent(self, now: Optional[datetime] = None) -> int:
        """Queue fixable base gaps of the recent window at top priority."""
        now = self._now(now)
        start = now - timedelta(hours=self.config.recent_scan_hours)
        queued = 0
        for instrument in self.catalog:
            try:
                gaps = await self.detector.find_fixable(instrument.code, BASE_RESOLUTION, start, now=now)
                await self.queue.enqueue_gaps(gaps, PRIORITY_RECENT_GAP)
            except StorageError as e:
                self.logger.error("Recent gap scan failed", instrument=instrument.code, error=str(e))
                continue
            queued += len(gaps)
            self.metrics.increment('gaps_detected', len(gaps), label=BASE_RESOLUTION.value)
        if queued:
            self.logger.info("Recent gaps queued", count=queued)
        return queued

    async def integrity_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Daily gap + suspect scan over the lookback window, plus integrity rollups."""
        now = self._now(now)
        start = now - timedelta(days=self.config.integrity_lookback_days)
        totals = {'gaps': 0, 'suspects': 0, 'records': 0}

        for instrument in self.catalog:
            klass = instrument.instrument_class
            for resolution in self.config.integrity_resolutions:
                try:
                    gaps = await self.detector.find_fixable(instrument.code, resolution, start, now=now)
                    suspects = [
                        s for s in await self.detector.find_suspect(instrument.code, resolution, start, now, now)
                        if self.detector.classify(s, klass, now) == GapDisposition.FIXABLE
                    ]
                    await self.queue.enqueue_gaps(gaps, PRIORITY_INTEGRITY_GAP)
                    await self.queue.enqueue_gaps(suspects, PRIORITY_SUSPECT_CANDLE)

                    records = await self.detector.integrity_records(instrument.code, resolution, start, now, now)
                    if self.integrity is not None and records:
                        await self.integrity.upsert_integrity(records)
                except StorageError as e:
                    self.logger.error(
                        "Integrity sweep failed",
                        instrument=instrument.code,
                        resolution=resolution.value,
                        error=str(e)
                    )
                    continue

                totals['gaps'] += len(gaps)
                totals['suspects'] += len(suspects)
                totals['records'] += len(records)
                self.metrics.increment('gaps_detected', len(gaps) + len(suspects), label=resolution.value)

        self.logger.info("Integrity sweep complete", **totals)
        return totals

    # ── Retention ────────────────────────────────────────

    async def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop old ticks and old completed queue items."""
        now = self._now(now)
        ticks = await self.tick_store.cleanup(now) if self.tick_store is not None else 0
        items = await self.queue.cleanup(self.config.completed_retention_days, now)
        self.logger.info("Retention cleanup", ticks=ticks, queue_items=items)
        return {'ticks': ticks, 'queue_items': items}
