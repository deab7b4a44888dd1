"""
Candle Engine - Central wiring of the self-healing candle pipeline.

Startup:
1. Open storage and release queue items stuck in processing
2. Load the instrument catalog
3. Seed the spike filter from the last hour of persisted base closes
4. Build tick store, candle builder, gap detector and providers
5. Build the healing orchestrator and health monitor
6. Register periodic tasks and start the feed

Shutdown (SIGINT/SIGTERM):
- Stop the scheduler and wait for in-flight tasks
- Flush every buffered tick
- Close feed, providers and storage
"""

import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .core.config import EngineConfig, load_config
from .core.constants import BASE_RESOLUTION, InstrumentTier, RESOLUTION_CHAIN, TickSource
from .core.exceptions import ClosedPeriodError, InvalidConfigError
from .core.types import Instrument
from .data.candle_builder import CandleBuilder
from .data.gap_detector import GapDetector
from .data.spike_filter import SpikeFilter
from .data.tick_store import TickStore
from .feed.messages import TradeMessage
from .feed.stream import FeedClient
from .healing.backfill_queue import BackfillQueue
from .healing.circuit_breaker import CircuitBreaker
from .healing.orchestrator import HealingOrchestrator
from .healing.scheduler import Scheduler
from .markets.calendar import MarketCalendar
from .markets.catalog import SymbolCatalog
from .monitoring.health_monitor import HealthMonitor
from .monitoring.logger import get_logger, setup_logger
from .monitoring.metrics_tracker import MetricsTracker
from .providers.backfill import BackfillProvider
from .providers.base import RateLimiter
from .providers.finnhub import FinnhubProvider
from .providers.polygon import PolygonProvider
from .storage.base import Storage
from .storage.memory import MemoryStorage
from .storage.sqlite import SQLiteStorage


class CandleEngine:
    """
    Owns every component and the periodic task schedule.

    Components are created once in ``setup`` and shared by reference.
    """

    def __init__(
        self,
        config: EngineConfig,
        storage: Optional[Storage] = None,
        provider: Optional[BackfillProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
        enable_feed: bool = True
    ):
        self.config = config
        self.storage = storage
        self.provider = provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.enable_feed = enable_feed

        self.logger = get_logger(__name__)

        # Components (initialized in setup)
        self.catalog: Optional[SymbolCatalog] = None
        self.calendar = MarketCalendar(config.markets.us_holidays)
        self.metrics = MetricsTracker()
        self.spike_filter: Optional[SpikeFilter] = None
        self.tick_store: Optional[TickStore] = None
        self.builder: Optional[CandleBuilder] = None
        self.detector: Optional[GapDetector] = None
        self.queue: Optional[BackfillQueue] = None
        self.breaker: Optional[CircuitBreaker] = None
        self.orchestrator: Optional[HealingOrchestrator] = None
        self.health: Optional[HealthMonitor] = None
        self.feed: Optional[FeedClient] = None
        self.scheduler: Optional[Scheduler] = None

        self.stop_event: Optional[asyncio.Event] = None

    async def setup(self) -> None:
        """Initialize all components."""
        self.logger.info("=" * 60)
        self.logger.info("Initializing Candle Engine", environment=self.config.environment)
        self.logger.info("=" * 60)

        # 1. Storage
        self.logger.info("1. Opening storage...")
        if self.storage is None:
            self.storage = self._create_storage()
        await self.storage.connect()
        self.queue = BackfillQueue(self.storage, self.config.healing.max_attempts, clock=self._clock)
        await self.queue.recover()
        self.logger.info(f"✓ Storage ready ({self.config.storage.backend})")

        # 2. Instruments
        self.logger.info("2. Loading instruments...")
        self.catalog = SymbolCatalog.from_config(self.config.instruments)
        if not len(self.catalog):
            raise InvalidConfigError("No instruments configured")
        self.logger.info(
            f"✓ Loaded {len(self.catalog)} instruments",
            primary=len(self.catalog.primary),
            secondary=len(self.catalog.secondary)
        )

        # 3. Spike filter
        self.logger.info("3. Seeding spike filter...")
        self.spike_filter = SpikeFilter(self.config.spike_filter, clock=self._clock)
        since = self._clock() - timedelta(minutes=self.config.spike_filter.seed_lookback_minutes)
        seeded = self.spike_filter.seed(await self.storage.get_recent_closes(BASE_RESOLUTION, since))
        self.logger.info(f"✓ Spike filter ready ({seeded} instruments seeded)")

        # 4. Data pipeline
        self.logger.info("4. Initializing data pipeline...")
        self.tick_store = TickStore(
            self.storage, self.spike_filter, self.catalog,
            config=self.config.tick_store, metrics=self.metrics,
            calendar=self.calendar, clock=self._clock
        )
        self.builder = CandleBuilder(
            self.storage, self.tick_store, self.catalog,
            calendar=self.calendar, config=self.config.builder, metrics=self.metrics,
            spike_filter=self.spike_filter, clock=self._clock
        )
        self.detector = GapDetector(
            self.storage, self.catalog,
            calendar=self.calendar, config=self.config.gap_detector, clock=self._clock
        )
        self.logger.info("✓ Data pipeline ready")

        # 5. Providers
        self.logger.info("5. Initializing historical providers...")
        if self.provider is None:
            self.provider = self._create_provider()
        self.logger.info(
            "✓ Providers ready",
            vendors=",".join(p.name for p in self.provider.providers)
        )

        # 6. Healing
        self.logger.info("6. Initializing healing orchestrator...")
        self.breaker = CircuitBreaker(
            failure_threshold=self.config.healing.circuit_failure_threshold,
            cooldown_minutes=self.config.healing.circuit_cooldown_minutes,
            clock=self._clock
        )
        self.orchestrator = HealingOrchestrator(
            self.catalog, self.provider, self.builder, self.detector, self.queue, self.breaker,
            spike_filter=self.spike_filter, tick_store=self.tick_store, integrity=self.storage,
            calendar=self.calendar, config=self.config.healing, metrics=self.metrics,
            clock=self._clock
        )
        self.logger.info("✓ Healing orchestrator ready")

        # 7. Feed
        if self.enable_feed and self.config.feed.api_key:
            self.feed = FeedClient(self.config.feed, self.catalog, self.on_trade)
            self.logger.info("✓ Feed configured")
        else:
            self.logger.warning("No feed API key - running without live ticks")

        # 8. Monitoring and schedule
        self.health = HealthMonitor(
            self.storage, self.catalog,
            calendar=self.calendar, config=self.config.monitoring, metrics=self.metrics,
            queue=self.queue, breaker=self.breaker, feed=self.feed, clock=self._clock
        )
        self.scheduler = Scheduler(metrics=self.metrics, clock=self._clock)
        self._schedule_tasks()
        self.logger.info(f"✓ {len(self.scheduler.tasks)} periodic tasks scheduled")

        self.logger.info("=" * 60)
        self.logger.info("✓ ALL SYSTEMS OPERATIONAL")
        self.logger.info("=" * 60)

    def _create_storage(self) -> Storage:
        if self.config.storage.backend == "memory":
            return MemoryStorage()
        return SQLiteStorage(self.config.storage.path)

    def _create_provider(self) -> BackfillProvider:
        cfg = self.config.providers
        vendors = []
        if cfg.polygon.enabled:
            vendors.append(PolygonProvider(
                api_key=cfg.polygon.api_key,
                base_url=cfg.polygon.base_url,
                rate_limiter=RateLimiter(cfg.polygon.min_interval_seconds),
                request_timeout=cfg.timeout_seconds
            ))
        if cfg.finnhub.enabled:
            vendors.append(FinnhubProvider(
                api_key=cfg.finnhub.api_key,
                base_url=cfg.finnhub.base_url,
                rate_limiter=RateLimiter(cfg.finnhub.min_interval_seconds),
                request_timeout=cfg.timeout_seconds
            ))
        if not vendors:
            raise InvalidConfigError("No historical provider enabled")

        return BackfillProvider(
            vendors[0],
            vendors[1] if len(vendors) > 1 else None,
            config=cfg,
            calendar=self.calendar,
            metrics=self.metrics
        )

    def _schedule_tasks(self) -> None:
        intervals = {k: timedelta(seconds=v) for k, v in self.config.healing.intervals.items()}
        add = self.scheduler.add

        add("flush_ticks", intervals["flush_ticks"], self.tick_store.flush_all)
        add("build_1m", intervals["build_base"], self.builder.build_base_all,
            align=True, delay=timedelta(seconds=2))
        # Each level waits for the build of its source level
        source = "build_1m"
        for resolution in RESOLUTION_CHAIN[1:]:
            name = f"build_{resolution.value}"
            add(name, resolution.period,
                lambda r=resolution: self.builder.build_resolution_all(r),
                align=True, delay=timedelta(seconds=5), after=source)
            source = name

        add("heal_primary", intervals["heal_primary"],
            lambda: self.orchestrator.heal_tier(InstrumentTier.PRIMARY))
        add("heal_secondary", intervals["heal_secondary"],
            lambda: self.orchestrator.heal_tier(InstrumentTier.SECONDARY))
        add("scan_recent", intervals["scan_recent"], self.orchestrator.scan_recent)
        add("drain_queue", intervals["drain_queue"], self.orchestrator.drain_queue)
        add("integrity_sweep", intervals["integrity_sweep"], self.orchestrator.integrity_sweep)
        add("health_check", intervals["health_check"], self.health_check)
        add("cleanup", intervals["cleanup"], self.orchestrator.cleanup)

    async def on_trade(self, instrument: Instrument, trade: TradeMessage) -> None:
        """Feed callback: ingest the tick and extend its live base candle."""
        result = await self.tick_store.add_tick(
            instrument.code,
            trade.price,
            trade.volume,
            trade.timestamp_ms,
            TickSource.LIVE
        )
        if not result.accepted:
            return
        try:
            await self.builder.apply_tick(result.tick)
        except ClosedPeriodError:
            # Late trade: the stored tick is picked up when the minute is finalized
            self.logger.debug("Late tick not applied to live candle", instrument=instrument.code)

    async def health_check(self) -> dict:
        report = await self.health.check()
        if self.config.monitoring.metrics_file:
            self.metrics.export_metrics(self.config.monitoring.metrics_file)
        return report

    def _signal_handler(self, signum) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum} - initiating shutdown")
        if self.stop_event is not None:
            self.stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._signal_handler, signum)
            except NotImplementedError:
                signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(self._signal_handler, s))

    async def run(self, once: bool = False) -> None:
        """
        Run until a shutdown signal arrives.

        Args:
            once: Run every task a single time and exit
        """
        self.stop_event = asyncio.Event()

        try:
            await self.setup()
            if once:
                await self.scheduler.run_due()
                return

            self._install_signal_handlers()
            jobs = [self.scheduler.run_forever(self.stop_event)]
            if self.feed is not None:
                jobs.append(self.feed.run(self.stop_event))
            self.logger.info("Starting main loop...")
            await asyncio.gather(*jobs)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        self.logger.info("=" * 60)
        self.logger.info("Shutting down candle engine")
        self.logger.info("=" * 60)

        if self.stop_event is not None:
            self.stop_event.set()
        if self.scheduler is not None:
            await self.scheduler.wait_in_flight()

        if self.tick_store is not None:
            self.logger.info("Flushing ticks...")
            flushed = await self.tick_store.flush_all()
            self.logger.info(f"✓ {flushed} ticks flushed")

        if self.feed is not None:
            await self.feed.close()
        if self.provider is not None:
            for vendor in self.provider.providers:
                await vendor.close()
        if self.storage is not None:
            await self.storage.close()

        if self.config.monitoring.metrics_file:
            self.metrics.export_metrics(self.config.monitoring.metrics_file)

        self.logger.info("=" * 60)
        self.logger.info("✓ Shutdown complete")
        self.logger.info("=" * 60)


def main() -> None:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Self-healing multi-resolution candle engine")
    parser.add_argument(
        '--config',
        default='config/config.yaml',
        help='Configuration file path'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        help='Override monitoring.log_level'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run every periodic task once and exit'
    )
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logger(
        log_file=config.monitoring.log_file,
        level=args.log_level or config.monitoring.log_level
    )

    engine = CandleEngine(config)
    asyncio.run(engine.run(once=args.once))


if __name__ == "__main__":
    main()
