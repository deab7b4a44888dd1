"""
Integration tests for the healing orchestrator.

Covers:
- Healed candles supersede live ones and propagate upward
- Circuit breaker gating of the queue drain
- Heal windows, tier passes, recent scans and the integrity sweep
- Queue item outcomes and retention cleanup
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from candlekeeper.core.constants import (
    BackfillStatus, CandleOrigin, InstrumentTier, Resolution,
)
from candlekeeper.core.exceptions import ClosedPeriodError, RateLimitError
from candlekeeper.providers.base import HistoricalProvider
from candlekeeper.storage.memory import MemoryStorage


UTC = timezone.utc
T0 = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)


# ── Helpers ──────────────────────────────────────────────


class FakeClock:

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeVendor(HistoricalProvider):
    """Serves one bar per minute of any requested span, or fails while ``error`` is set."""

    name = "fake"

    def __init__(self, close="1.1050", error=None, empty=False):
        super().__init__()
        self.close = Decimal(close)
        self.error = error
        self.empty = empty
        self.calls = []

    def supports(self, instrument, resolution=None):
        return True

    async def fetch_chunk(self, instrument, resolution, start, end):
        self.calls.append((instrument.code, start, end))
        if self.error is not None:
            raise self.error
        if self.empty:
            return []
        rows = []
        ts = start
        while ts < end:
            rows.append({
                "timestamp": ts,
                "open": self.close,
                "high": self.close + Decimal("0.0010"),
                "low": self.close - Decimal("0.0010"),
                "close": self.close,
                "volume": 10,
            })
            ts += resolution.period
        return rows


def _system(vendor, now, codes=("EURUSD",), **healing):
    from candlekeeper.core.config import HealingConfig, ProviderConfig
    from candlekeeper.data.candle_builder import CandleBuilder
    from candlekeeper.data.gap_detector import GapDetector
    from candlekeeper.data.spike_filter import SpikeFilter
    from candlekeeper.data.tick_store import TickStore
    from candlekeeper.healing.backfill_queue import BackfillQueue
    from candlekeeper.healing.circuit_breaker import CircuitBreaker
    from candlekeeper.healing.orchestrator import HealingOrchestrator
    from candlekeeper.markets.catalog import SymbolCatalog
    from candlekeeper.monitoring.metrics_tracker import MetricsTracker
    from candlekeeper.providers.backfill import BackfillProvider

    async def no_sleep(seconds):
        pass

    clock = FakeClock(now)
    storage = MemoryStorage()
    metrics = MetricsTracker()
    catalog = SymbolCatalog.from_config([{"code": code, "class": "forex"} for code in codes])
    spike_filter = SpikeFilter(clock=clock)
    tick_store = TickStore(storage, spike_filter, catalog, metrics=metrics, clock=clock)
    builder = CandleBuilder(storage, tick_store, catalog, metrics=metrics, spike_filter=spike_filter, clock=clock)
    detector = GapDetector(storage, catalog, clock=clock)
    queue = BackfillQueue(storage, max_attempts=3, clock=clock)
    breaker = CircuitBreaker(failure_threshold=2, cooldown_minutes=3, clock=clock)
    provider = BackfillProvider(vendor, config=ProviderConfig(), metrics=metrics, sleep=no_sleep)
    orchestrator = HealingOrchestrator(
        catalog, provider, builder, detector, queue, breaker,
        spike_filter=spike_filter, tick_store=tick_store, integrity=storage,
        config=HealingConfig(**healing), metrics=metrics, clock=clock
    )
    return SimpleNamespace(
        clock=clock, storage=storage, metrics=metrics, catalog=catalog,
        spike_filter=spike_filter, tick_store=tick_store, builder=builder,
        queue=queue, breaker=breaker, orchestrator=orchestrator, vendor=vendor,
    )


def _candle(minute, start=T0, flat=False):
    from candlekeeper.core.types import Candle
    price = Decimal("1.1000")
    return Candle(
        instrument="EURUSD",
        resolution=Resolution.M1,
        period_start=start + timedelta(minutes=minute),
        open=price,
        high=price if flat else price + Decimal("0.0005"),
        low=price if flat else price - Decimal("0.0005"),
        close=price,
        volume=Decimal("1"),
    )


# ══════════════════════════════════════════════════════════
#  Heal a range
# ══════════════════════════════════════════════════════════


class TestHealRange:

    def test_healed_candle_supersedes_live_candle(self):
        from candlekeeper.core.types import Tick
        system = _system(FakeVendor(close="1.1050"), T0 + timedelta(minutes=5, seconds=30))
        instrument = system.catalog.get("EURUSD")

        async def scenario():
            live_tick = Tick("EURUSD", Decimal("1.1000"), T0 + timedelta(minutes=5, seconds=10), Decimal("1"))
            await system.builder.apply_tick(live_tick)

            system.clock.advance(minutes=35)
            result = await system.orchestrator.heal_range(
                instrument, Resolution.M1, T0, T0 + timedelta(minutes=10)
            )

            late_tick = Tick("EURUSD", Decimal("1.2000"), T0 + timedelta(minutes=5, seconds=50))
            with pytest.raises(ClosedPeriodError):
                await system.builder.apply_tick(late_tick)

            await system.tick_store.add_tick("EURUSD", "1.1049", 1, T0 + timedelta(minutes=5, seconds=20))
            build = await system.builder.build_base("EURUSD", T0 + timedelta(minutes=5))

            m1 = await system.storage.get_candle("EURUSD", Resolution.M1, T0 + timedelta(minutes=5))
            m5 = await system.storage.get_candle("EURUSD", Resolution.M5, T0 + timedelta(minutes=5))
            d1 = await system.storage.get_candle("EURUSD", Resolution.D1, datetime(2025, 3, 12, tzinfo=UTC))
            return result, build, m1, m5, d1

        result, build, m1, m5, d1 = asyncio.run(scenario())

        assert (result.fetched, result.saved) == (10, 10)
        assert result.rebuilt > 0
        assert m1.origin == CandleOrigin.BACKFILL
        assert m1.close == Decimal("1.1050")
        assert build.skipped == "healed"
        assert m5.origin == CandleOrigin.AGGREGATE
        assert m5.close == Decimal("1.1050")
        assert m5.source_count == 5
        # The day is still open at 10:40
        assert d1 is None
        assert system.metrics.get('candles_healed') == 10

    def test_recent_heal_resets_spike_reference(self):
        system = _system(FakeVendor(close="1.3000"), T0 + timedelta(minutes=40))
        instrument = system.catalog.get("EURUSD")
        system.spike_filter.update_price("EURUSD", Decimal("1.1000"), T0)

        asyncio.run(system.orchestrator.heal_range(instrument, Resolution.M1, T0, T0 + timedelta(minutes=10)))

        price, timestamp = system.spike_filter.last_prices["EURUSD"]
        assert price == Decimal("1.3000")
        assert timestamp == T0 + timedelta(minutes=10)


# ══════════════════════════════════════════════════════════
#  Circuit breaker + queue
# ══════════════════════════════════════════════════════════


class TestQueueDrain:

    def test_rate_limits_trip_breaker_and_stop_drain(self):
        """Two rate limits open the breaker; nothing is claimed until the cooldown ends."""
        vendor = FakeVendor(error=RateLimitError("429"))
        system = _system(vendor, T0 + timedelta(hours=2))

        async def scenario():
            for offset in (0, 20, 40):
                start = T0 + timedelta(minutes=offset)
                await system.queue.enqueue("EURUSD", Resolution.M1, start, start + timedelta(minutes=10))

            first = await system.orchestrator.drain_queue()
            paused = await system.orchestrator.drain_queue()

            system.clock.advance(minutes=3, seconds=1)
            vendor.error = None
            resumed = await system.orchestrator.drain_queue()
            return first, paused, resumed, await system.queue.counts()

        first, paused, resumed, counts = asyncio.run(scenario())

        assert first == {'processed': 2, 'completed': 0, 'retry': 2, 'failed': 0}
        assert paused['processed'] == 0
        assert resumed == {'processed': 3, 'completed': 3, 'retry': 0, 'failed': 0}
        assert len(vendor.calls) == 5
        assert counts['completed'] == 3
        assert system.breaker.trips == 1
        assert system.metrics.get('circuit_breaker_trips') == 1

    def test_unknown_instrument_item_is_retried(self):
        system = _system(FakeVendor(), T0 + timedelta(hours=2))

        async def scenario():
            await system.queue.enqueue("GBPUSD", Resolution.M1, T0, T0 + timedelta(minutes=10))
            outcome = await system.orchestrator.drain_queue(limit=1)
            return outcome, await system.queue.items()

        outcome, items = asyncio.run(scenario())
        assert outcome['retry'] == 1
        assert items[0].status == BackfillStatus.PENDING
        assert "UnknownInstrumentError" in items[0].last_error
        assert system.breaker.consecutive_failures == 0
        assert system.vendor.calls == []

    def test_exhausted_item_fails(self):
        system = _system(FakeVendor(error=RateLimitError("429")), T0 + timedelta(hours=2))

        async def scenario():
            await system.queue.enqueue("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=10))
            statuses = []
            for _ in range(3):
                item = (await system.queue.claim(1))[0]
                statuses.append(await system.orchestrator.process_item(item))
                system.breaker.reset()
            return statuses

        assert asyncio.run(scenario()) == [
            BackfillStatus.PENDING, BackfillStatus.PENDING, BackfillStatus.FAILED,
        ]

    def test_open_breaker_after_claim_keeps_attempts(self):
        system = _system(FakeVendor(), T0 + timedelta(hours=2))

        async def scenario():
            await system.queue.enqueue("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=10))
            item = (await system.queue.claim(1))[0]
            system.breaker.record_failure("429")
            system.breaker.record_failure("429")
            status = await system.orchestrator.process_item(item)
            return status, await system.queue.items()

        status, items = asyncio.run(scenario())
        assert status == BackfillStatus.PENDING
        assert items[0].status == BackfillStatus.PENDING
        assert items[0].attempts == 0
        assert system.vendor.calls == []

    def test_gap_left_by_empty_response_is_queued_again(self):
        vendor = FakeVendor(empty=True)
        system = _system(vendor, T0 + timedelta(minutes=30))
        hour_ago = T0 - timedelta(minutes=30)

        async def scenario():
            for minute in list(range(0, 10)) + list(range(20, 40)):
                await system.storage.upsert_candle(_candle(minute, start=hour_ago))

            await system.orchestrator.scan_recent()
            first = await system.orchestrator.drain_queue()

            vendor.empty = False
            queued = await system.orchestrator.scan_recent()
            second = await system.orchestrator.drain_queue()
            remaining = await system.orchestrator.detector.find_fixable(
                "EURUSD", Resolution.M1, hour_ago, now=system.clock()
            )
            return first, queued, second, remaining

        first, queued, second, remaining = asyncio.run(scenario())
        assert first['completed'] == 1
        assert queued == 1
        assert second == {'processed': 1, 'completed': 1, 'retry': 0, 'failed': 0}
        assert remaining == []

    def test_empty_response_completes_item(self):
        system = _system(FakeVendor(empty=True), T0 + timedelta(hours=2))

        async def scenario():
            await system.queue.enqueue("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=10))
            outcome = await system.orchestrator.drain_queue()
            return outcome, await system.queue.counts()

        outcome, counts = asyncio.run(scenario())
        assert outcome['completed'] == 1
        assert counts['completed'] == 1


# ══════════════════════════════════════════════════════════
#  Heal windows
# ══════════════════════════════════════════════════════════


class TestHealWindow:

    def test_window_then_already_healed(self):
        now = T0 + timedelta(minutes=40)
        system = _system(FakeVendor(close="1.1050"), now)
        instrument = system.catalog.get("EURUSD")

        async def scenario():
            first = await system.orchestrator.heal_window(instrument)
            second = await system.orchestrator.heal_window(instrument)
            return first, second

        first, second = asyncio.run(scenario())

        assert (first.start, first.end) == (T0 + timedelta(minutes=5), T0 + timedelta(minutes=20))
        assert first.saved == 15
        assert second.skipped == "already_healed"
        assert len(system.vendor.calls) == 1
        assert system.spike_filter.last_prices["EURUSD"][1] == T0 + timedelta(minutes=20)

    def test_window_only_covers_new_minutes(self):
        system = _system(FakeVendor(), T0 + timedelta(minutes=40))
        instrument = system.catalog.get("EURUSD")

        async def scenario():
            await system.orchestrator.heal_window(instrument)
            system.clock.advance(minutes=5)
            return await system.orchestrator.heal_window(instrument)

        result = asyncio.run(scenario())
        assert (result.start, result.end) == (T0 + timedelta(minutes=20), T0 + timedelta(minutes=25))

    def test_empty_window_is_retried(self):
        vendor = FakeVendor(empty=True)
        system = _system(vendor, T0 + timedelta(minutes=40))
        instrument = system.catalog.get("EURUSD")

        async def scenario():
            first = await system.orchestrator.heal_window(instrument)
            vendor.empty = False
            second = await system.orchestrator.heal_window(instrument)
            return first, second

        first, second = asyncio.run(scenario())
        assert first.fetched == 0
        assert (second.start, second.end) == (first.start, first.end)
        assert second.saved == 15
        assert len(vendor.calls) == 2

    def test_window_leaves_open_periods_to_builds(self):
        now = datetime(2025, 3, 12, 12, 30, tzinfo=UTC)
        system = _system(FakeVendor(), now)

        async def scenario():
            result = await system.orchestrator.heal_window(system.catalog.get("EURUSD"))
            day = datetime(2025, 3, 12, tzinfo=UTC)
            stored = {
                resolution: await system.storage.get_candles("EURUSD", resolution, day, day + timedelta(days=1))
                for resolution in (Resolution.M30, Resolution.H1, Resolution.H4, Resolution.D1)
            }
            return result, stored

        result, stored = asyncio.run(scenario())
        assert (result.start.hour, result.start.minute) == (11, 55)
        assert [c.period_start.hour for c in stored[Resolution.H1]] == [11]
        assert [(c.period_start.hour, c.period_start.minute) for c in stored[Resolution.M30]] == [(11, 30), (12, 0)]
        assert stored[Resolution.H4] == []
        assert stored[Resolution.D1] == []

    def test_weekend_is_skipped(self):
        saturday = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
        system = _system(FakeVendor(), saturday)

        result = asyncio.run(system.orchestrator.heal_window(system.catalog.get("EURUSD")))

        assert result.skipped == "market_closed"
        assert system.vendor.calls == []

    def test_tier_pass_stops_when_breaker_opens(self):
        vendor = FakeVendor(error=RateLimitError("429"))
        system = _system(vendor, T0 + timedelta(minutes=40), codes=("EURUSD", "GBPUSD", "USDJPY"))

        results = asyncio.run(system.orchestrator.heal_tier(InstrumentTier.PRIMARY))

        assert [r.instrument for r in results] == ["EURUSD", "GBPUSD"]
        assert all(r.error for r in results)
        assert [call[0] for call in vendor.calls] == ["EURUSD", "GBPUSD"]
        assert system.breaker.is_open


# ══════════════════════════════════════════════════════════
#  Scans
# ══════════════════════════════════════════════════════════


class TestScans:

    def test_scan_recent_queues_fixable_gap(self):
        now = T0 + timedelta(minutes=30)
        system = _system(FakeVendor(), now)
        hour_ago = T0 - timedelta(minutes=30)

        async def scenario():
            for minute in list(range(0, 10)) + list(range(20, 40)):
                await system.storage.upsert_candle(_candle(minute, start=hour_ago))
            queued = await system.orchestrator.scan_recent()
            return queued, await system.queue.items()

        queued, items = asyncio.run(scenario())

        assert queued == 1
        assert len(items) == 1
        assert (items[0].gap_start, items[0].gap_end) == (
            datetime(2025, 3, 12, 9, 40, tzinfo=UTC), datetime(2025, 3, 12, 9, 50, tzinfo=UTC)
        )
        assert items[0].priority == 10

    def test_integrity_sweep(self):
        now = datetime(2025, 3, 12, 12, 0, tzinfo=UTC)
        system = _system(FakeVendor(), now, integrity_lookback_days=1, integrity_resolutions=[Resolution.M1])
        day_ago = now - timedelta(days=1)

        async def scenario():
            candles = []
            for minute in range(24 * 60):
                ts = day_ago + timedelta(minutes=minute)
                if T0 <= ts < T0 + timedelta(minutes=10):
                    continue
                candles.append(_candle(minute, start=day_ago, flat=ts == datetime(2025, 3, 12, 11, 0, tzinfo=UTC)))
            await system.storage.upsert_candles(candles)

            totals = await system.orchestrator.integrity_sweep()
            return totals, await system.queue.items(), await system.storage.get_integrity("EURUSD")

        totals, items, records = asyncio.run(scenario())

        assert totals == {'gaps': 1, 'suspects': 1, 'records': 2}
        assert [(i.gap_start, i.priority) for i in items] == [
            (datetime(2025, 3, 12, 11, 0, tzinfo=UTC), 8),
            (T0, 5),
        ]
        assert [r.day for r in records] == ["2025-03-11", "2025-03-12"]
        assert records[1].missing == 10
        assert records[1].incomplete == 1


# ══════════════════════════════════════════════════════════
#  Retention
# ══════════════════════════════════════════════════════════


class TestCleanup:

    def test_cleanup_ticks_and_completed_items(self):
        system = _system(FakeVendor(), T0)

        async def scenario():
            await system.tick_store.add_tick("EURUSD", "1.1000", 1, T0 - timedelta(hours=72))
            await system.tick_store.add_tick("EURUSD", "1.1001", 1, T0 - timedelta(minutes=1))
            await system.tick_store.flush_all()

            item = await system.queue.enqueue("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=10))
            await system.queue.claim(1)
            await system.queue.complete(item)

            return await system.orchestrator.cleanup(now=T0 + timedelta(days=8))

        assert asyncio.run(scenario()) == {'ticks': 2, 'queue_items': 1}
