"""
Integration tests for the engine wiring.

Covers:
- Component setup and the periodic task schedule
- Live trades into the base candle, late trades
- A single pass over every periodic task
- Higher resolutions build after their source at a shared boundary (SQLite)
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from candlekeeper.core.constants import CandleOrigin, Resolution
from candlekeeper.providers.base import HistoricalProvider
from candlekeeper.storage.memory import MemoryStorage


UTC = timezone.utc
T0 = datetime(2025, 3, 12, 10, 0, tzinfo=UTC)


class EmptyVendor(HistoricalProvider):
    """Answers every request with no data."""

    name = "empty"

    def __init__(self):
        super().__init__()
        self.calls = []

    def supports(self, instrument, resolution=None):
        return True

    async def fetch_chunk(self, instrument, resolution, start, end):
        self.calls.append((instrument.code, resolution, start, end))
        return []


def _engine(now, storage=None):
    from candlekeeper.core.config import EngineConfig
    from candlekeeper.main import CandleEngine
    from candlekeeper.providers.backfill import BackfillProvider

    async def no_sleep(seconds):
        pass

    config = EngineConfig(instruments=[
        {"code": "EURUSD", "class": "forex", "vendor_symbol": "OANDA:EUR_USD"},
        {"code": "BTCUSD", "class": "crypto", "tier": "secondary"},
    ])
    config.storage.backend = "memory"
    config.monitoring.log_file = None

    vendor = EmptyVendor()
    provider = BackfillProvider(vendor, sleep=no_sleep)
    engine = CandleEngine(config, storage=storage or MemoryStorage(), provider=provider, clock=lambda: now, enable_feed=False)
    return engine, vendor


class TestEngine:

    def test_setup_schedules_every_task(self):
        engine, _ = _engine(T0)

        async def scenario():
            await engine.setup()
            await engine.shutdown()

        asyncio.run(scenario())

        assert list(engine.scheduler.tasks) == [
            "flush_ticks", "build_1m", "build_5m", "build_15m", "build_30m", "build_1h",
            "build_4h", "build_1d", "heal_primary", "heal_secondary", "scan_recent",
            "drain_queue", "integrity_sweep", "health_check", "cleanup",
        ]
        assert engine.feed is None
        assert engine.scheduler.tasks["build_5m"].align

    def test_trades_extend_live_candle(self):
        from candlekeeper.feed.messages import TradeMessage
        engine, _ = _engine(T0 + timedelta(seconds=30))

        def trade(price, seconds):
            return TradeMessage(price, "OANDA:EUR_USD", int((T0 + timedelta(seconds=seconds)).timestamp() * 1000), 1.0)

        async def scenario():
            await engine.setup()
            instrument = engine.catalog.get("EURUSD")
            await engine.on_trade(instrument, trade(1.1000, 10))
            await engine.on_trade(instrument, trade(1.1004, 20))
            await engine.on_trade(instrument, trade(1.1001, -50))
            candle = await engine.storage.get_candle("EURUSD", Resolution.M1, T0)
            buffered = engine.tick_store.tick_count("EURUSD")
            await engine.shutdown()
            return candle, buffered

        candle, buffered = asyncio.run(scenario())

        assert candle.origin == CandleOrigin.LIVE
        assert (candle.open, candle.high, candle.close) == (Decimal("1.1"), Decimal("1.1004"), Decimal("1.1004"))
        assert candle.source_count == 2
        assert buffered == 3
        assert engine.storage.tick_writes == 3

    def test_single_pass(self):
        engine, vendor = _engine(T0 + timedelta(minutes=30))

        asyncio.run(engine.run(once=True))

        status = engine.scheduler.get_status()
        assert all(task['runs'] == 1 for task in status.values())
        assert engine.metrics.get('task_failures') == 0
        assert ("EURUSD", Resolution.M1, T0 - timedelta(minutes=5), T0 + timedelta(minutes=10)) in vendor.calls
        assert engine.health.last_report is not None

    def test_hourly_boundary_builds_in_chain_order(self, tmp_path):
        from candlekeeper.core.types import Candle
        from candlekeeper.storage.sqlite import SQLiteStorage
        now = T0 + timedelta(hours=1, seconds=5)
        engine, _ = _engine(now, storage=SQLiteStorage(str(tmp_path / "candles.db")))

        def minute(i):
            close = Decimal("1.1000") + Decimal("0.0001") * i
            return Candle(
                instrument="EURUSD",
                resolution=Resolution.M1,
                period_start=T0 + timedelta(minutes=i),
                open=close,
                high=close + Decimal("0.0002"),
                low=close - Decimal("0.0002"),
                close=close,
                volume=Decimal("1"),
                source_count=5,
            )

        async def scenario():
            await engine.setup()
            await engine.storage.upsert_candles([minute(i) for i in range(60)])
            # Everything that had closed by 10:55 is already built
            await engine.builder.rebuild_upward("EURUSD", T0, T0 + timedelta(minutes=55), now=T0 + timedelta(minutes=55))

            await engine.scheduler.run_due(now)
            built = {
                resolution: await engine.storage.get_candle("EURUSD", resolution, start)
                for resolution, start in (
                    (Resolution.M5, T0 + timedelta(minutes=55)),
                    (Resolution.M15, T0 + timedelta(minutes=45)),
                    (Resolution.M30, T0 + timedelta(minutes=30)),
                    (Resolution.H1, T0),
                )
            }
            await engine.shutdown()
            return built

        built = asyncio.run(scenario())

        assert [(c.source_count, c.is_complete) for c in built.values()] == [
            (5, True), (3, True), (2, True), (2, True),
        ]
        assert all(c.close == Decimal("1.1059") for c in built.values())
