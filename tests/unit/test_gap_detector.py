"""
Unit tests for the gap detector.

Covers:
- Between / leading / trailing / empty gaps (1.5x interval rule)
- Suspect (flat) candles
- Classification: fixable, too recent, market closed
- Integrity rollups per day
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from candlekeeper.core.constants import GapDisposition, GapKind, Resolution
from candlekeeper.storage.memory import MemoryStorage


UTC = timezone.utc
T0 = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)


# ── Helpers ──────────────────────────────────────────────


def _candle(minute, flat=False, start=T0):
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


async def _fill(storage, minutes, start=T0):
    for minute in minutes:
        await storage.upsert_candle(_candle(minute, start=start))


def _detector(storage, **config):
    from candlekeeper.core.config import GapDetectorConfig
    from candlekeeper.data.gap_detector import GapDetector
    from candlekeeper.markets.catalog import SymbolCatalog

    catalog = SymbolCatalog.from_config([{"code": "EURUSD", "class": "forex"}])
    return GapDetector(storage, catalog, config=GapDetectorConfig(**config), clock=lambda: T0 + timedelta(hours=1))


# ══════════════════════════════════════════════════════════
#  Scanning
# ══════════════════════════════════════════════════════════


class TestScan:

    def test_ten_minute_gap_before_and_after_heal(self):
        """A 10 minute hole is one BETWEEN gap; once filled, the scan is clean."""
        storage = MemoryStorage()
        detector = _detector(storage)
        end = T0 + timedelta(minutes=30)
        now = T0 + timedelta(hours=1)

        async def scenario():
            await _fill(storage, list(range(0, 10)) + list(range(20, 30)))
            before = await detector.scan("EURUSD", Resolution.M1, T0, end, now=now)
            await _fill(storage, range(10, 20))
            after = await detector.scan("EURUSD", Resolution.M1, T0, end, now=now)
            return before, after

        before, after = asyncio.run(scenario())

        assert len(before) == 1
        gap = before[0]
        assert gap.kind == GapKind.BETWEEN
        assert gap.start == T0 + timedelta(minutes=10)
        assert gap.end == T0 + timedelta(minutes=20)
        assert gap.missing_count == 10
        assert after == []

    def test_single_missing_candle_is_a_gap(self):
        """Spacing of two periods exceeds the 1.5x limit."""
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, [0, 1, 3, 4])
            return await detector.scan("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=5), now=T0 + timedelta(hours=1))

        gaps = asyncio.run(scenario())
        assert [(g.start, g.missing_count) for g in gaps] == [(T0 + timedelta(minutes=2), 1)]

    def test_leading_gap(self):
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, range(5, 10))
            return await detector.scan("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=10), now=T0 + timedelta(hours=1))

        gaps = asyncio.run(scenario())
        assert len(gaps) == 1
        assert gaps[0].kind == GapKind.LEADING
        assert (gaps[0].start, gaps[0].end) == (T0, T0 + timedelta(minutes=5))

    def test_trailing_gap(self):
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, range(0, 10))
            return await detector.scan("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=30), now=T0 + timedelta(hours=1))

        gaps = asyncio.run(scenario())
        assert len(gaps) == 1
        assert gaps[0].kind == GapKind.TRAILING
        assert (gaps[0].start, gaps[0].end) == (T0 + timedelta(minutes=10), T0 + timedelta(minutes=30))

    def test_short_trailing_lag_is_not_a_gap(self):
        """The newest candle may trail the boundary by up to two periods."""
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, range(0, 29))
            return await detector.scan("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=30), now=T0 + timedelta(hours=1))

        assert asyncio.run(scenario()) == []

    def test_empty_range(self):
        detector = _detector(MemoryStorage())
        gaps = asyncio.run(
            detector.scan("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=30), now=T0 + timedelta(hours=1))
        )
        assert len(gaps) == 1
        assert gaps[0].kind == GapKind.EMPTY
        assert gaps[0].missing_count == 30

    def test_open_period_never_reported(self):
        detector = _detector(MemoryStorage())
        now = T0 + timedelta(seconds=30)
        assert asyncio.run(detector.scan("EURUSD", Resolution.M1, T0, now=now)) == []

    def test_suspect_candles(self):
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, [0, 1, 3])
            await storage.upsert_candle(_candle(2, flat=True))
            return await detector.find_suspect("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=5))

        suspects = asyncio.run(scenario())
        assert [(s.kind, s.start) for s in suspects] == [(GapKind.SUSPECT, T0 + timedelta(minutes=2))]


# ══════════════════════════════════════════════════════════
#  Classification
# ══════════════════════════════════════════════════════════


def _gap(start, end):
    from candlekeeper.core.types import Gap
    return Gap("EURUSD", Resolution.M1, start, end, missing_count=int((end - start).total_seconds() // 60))


class TestClassify:

    def test_old_gap_in_open_market_is_fixable(self):
        detector = _detector(MemoryStorage())
        gap = _gap(T0, T0 + timedelta(minutes=10))
        assert detector.classify(gap, now=T0 + timedelta(hours=1)) == GapDisposition.FIXABLE
        assert gap.disposition == GapDisposition.FIXABLE
        assert gap.age == timedelta(minutes=50)

    def test_recent_gap_is_too_recent(self):
        detector = _detector(MemoryStorage())
        gap = _gap(T0, T0 + timedelta(minutes=10))
        assert detector.classify(gap, now=T0 + timedelta(minutes=25)) == GapDisposition.TOO_RECENT

    def test_too_recent_applies_to_between_gaps(self):
        """A hole closed by newer candles is still too recent until the providers publish it."""
        storage = MemoryStorage()
        detector = _detector(storage)
        now = T0 + timedelta(minutes=25)

        async def scenario():
            await _fill(storage, list(range(0, 5)) + list(range(10, 24)))
            gaps = await detector.scan("EURUSD", Resolution.M1, T0, now=now)
            fixable = await detector.find_fixable("EURUSD", Resolution.M1, T0, now=now)
            return gaps, fixable

        gaps, fixable = asyncio.run(scenario())
        assert [g.kind for g in gaps] == [GapKind.BETWEEN]
        assert fixable == []

    def test_weekend_gap_is_market_closed(self):
        detector = _detector(MemoryStorage())
        saturday = datetime(2025, 3, 15, 10, 0, tzinfo=UTC)
        gap = _gap(saturday, saturday + timedelta(hours=2))
        assert detector.classify(gap, now=datetime(2025, 3, 17, 10, 0, tzinfo=UTC)) == GapDisposition.MARKET_CLOSED

    def test_find_fixable_with_suspects(self):
        storage = MemoryStorage()
        detector = _detector(storage)
        now = T0 + timedelta(hours=1)

        async def scenario():
            await _fill(storage, list(range(0, 5)) + list(range(8, 30)))
            await storage.upsert_candle(_candle(12, flat=True))
            return await detector.find_fixable(
                "EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=30), now=now, include_suspect=True
            )

        fixable = asyncio.run(scenario())
        assert [(g.kind, g.start) for g in fixable] == [
            (GapKind.BETWEEN, T0 + timedelta(minutes=5)),
            (GapKind.SUSPECT, T0 + timedelta(minutes=12)),
        ]


# ══════════════════════════════════════════════════════════
#  Integrity
# ══════════════════════════════════════════════════════════


class TestIntegrity:

    def test_coverage(self):
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, range(0, 8))
            return await detector.coverage("EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=10))

        assert asyncio.run(scenario()) == 0.8

    def test_weekend_coverage_is_full(self):
        detector = _detector(MemoryStorage())
        saturday = datetime(2025, 3, 15, 10, 0, tzinfo=UTC)
        assert asyncio.run(detector.coverage("EURUSD", Resolution.M1, saturday, saturday + timedelta(hours=1))) == 1.0

    def test_integrity_records(self):
        storage = MemoryStorage()
        detector = _detector(storage)

        async def scenario():
            await _fill(storage, range(0, 10))
            await storage.upsert_candle(_candle(10, flat=True))
            return await detector.integrity_records(
                "EURUSD", Resolution.M1, T0, T0 + timedelta(minutes=20), now=T0 + timedelta(hours=2)
            )

        records = asyncio.run(scenario())
        assert len(records) == 1
        record = records[0]
        assert record.day == "2025-03-12"
        assert (record.expected, record.actual, record.missing, record.incomplete) == (20, 11, 9, 1)
        assert record.status == "gaps"
