"""
Engine configuration.

``config/config.yaml`` is loaded with ``yaml.safe_load`` and mapped onto the
dataclasses below. Anything the file omits falls back to the defaults in
``core.constants``. API keys come from the environment.
"""

import os
from datetime import date
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from . import constants as C
from .constants import InstrumentClass, Resolution
from .exceptions import InvalidConfigError, MissingConfigError
from .timeframes import parse_resolution


@dataclass
class SpikeFilterConfig:
    tick_thresholds: Dict[InstrumentClass, float] = field(
        default_factory=lambda: dict(C.DEFAULT_TICK_SPIKE_THRESHOLDS)
    )
    candle_thresholds: Dict[InstrumentClass, float] = field(
        default_factory=lambda: dict(C.DEFAULT_CANDLE_SPIKE_THRESHOLDS)
    )
    fallback_threshold: float = C.FALLBACK_TICK_THRESHOLD
    stale_seconds: int = C.STALE_PRICE_SECONDS
    history_length: int = C.PRICE_HISTORY_LENGTH
    min_samples: int = C.MIN_VOLATILITY_SAMPLES
    max_multiplier: float = C.MAX_VOLATILITY_MULTIPLIER
    seed_lookback_minutes: int = C.SEED_LOOKBACK_MINUTES


@dataclass
class TickStoreConfig:
    buffer_size: int = C.TICK_BUFFER_SIZE
    flush_threshold: int = C.TICK_FLUSH_THRESHOLD
    batch_size: int = C.TICK_BATCH_SIZE
    requeue_on_failure: int = C.TICK_REQUEUE_ON_FAILURE
    retention_hours: int = C.TICK_RETENTION_HOURS


@dataclass
class BuilderConfig:
    min_complete_ticks: int = C.MIN_COMPLETE_TICKS
    min_source_coverage: float = C.MIN_SOURCE_COVERAGE


@dataclass
class GapDetectorConfig:
    interval_factor: float = C.GAP_INTERVAL_FACTOR
    trailing_periods: int = C.TRAILING_GAP_PERIODS
    provider_delay_minutes: int = C.PROVIDER_DELAY_MINUTES


@dataclass
class VendorConfig:
    """Connection settings for one historical vendor."""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    min_interval_seconds: float = 0.0
    enabled: bool = True


@dataclass
class ProviderConfig:
    strategy: str = "primary_first"
    timeout_seconds: float = C.PROVIDER_TIMEOUT_SECONDS
    max_retries: int = C.PROVIDER_MAX_RETRIES
    retry_backoff_seconds: float = C.PROVIDER_RETRY_BACKOFF_SECONDS
    chunk_delay_seconds: float = C.PROVIDER_CHUNK_DELAY_SECONDS
    min_coverage: float = C.MIN_SOURCE_COVERAGE
    polygon: VendorConfig = field(
        default_factory=lambda: VendorConfig(min_interval_seconds=12.0)
    )
    finnhub: VendorConfig = field(
        default_factory=lambda: VendorConfig(min_interval_seconds=1.0)
    )


@dataclass
class HealingConfig:
    max_attempts: int = C.MAX_BACKFILL_ATTEMPTS
    batch_limit: int = C.BACKFILL_BATCH_LIMIT
    circuit_failure_threshold: int = C.CIRCUIT_FAILURE_THRESHOLD
    circuit_cooldown_minutes: int = C.CIRCUIT_COOLDOWN_MINUTES
    window_minutes: int = C.HEALING_WINDOW_MINUTES
    recent_scan_hours: int = 1
    integrity_lookback_days: int = 7
    integrity_resolutions: List[Resolution] = field(
        default_factory=lambda: [Resolution.M1, Resolution.M5, Resolution.H1]
    )
    completed_retention_days: int = C.COMPLETED_RETENTION_DAYS
    intervals: Dict[str, int] = field(default_factory=lambda: {
        "flush_ticks": 10,
        "build_base": 60,
        "heal_primary": 300,
        "heal_secondary": 900,
        "scan_recent": 3600,
        "drain_queue": 300,
        "integrity_sweep": 86400,
        "health_check": 600,
        "cleanup": 86400,
    })
    """Scheduler intervals in seconds. Higher resolution builds run once per period."""


@dataclass
class FeedConfig:
    url: str = "wss://ws.finnhub.io"
    api_key: Optional[str] = None
    reconnect_base_delay: float = C.RECONNECT_BASE_DELAY_SECONDS
    reconnect_max_delay: float = C.RECONNECT_MAX_DELAY_SECONDS
    max_reconnect_attempts: int = C.MAX_RECONNECT_ATTEMPTS


@dataclass
class MarketsConfig:
    us_holidays: Dict[date, str] = field(default_factory=dict)


@dataclass
class StorageConfig:
    backend: str = "sqlite"
    path: str = "data/candles.db"


@dataclass
class MonitoringConfig:
    log_level: str = "INFO"
    log_file: Optional[str] = "data/logs/candlekeeper.log"
    metrics_file: Optional[str] = None
    stale_data_minutes: int = 5
    max_pending_items: int = 50
    max_failed_items: int = 10
    max_incomplete_percent: float = 5.0


@dataclass
class EngineConfig:
    """Top-level configuration of a running engine."""
    environment: str = "dev"
    instruments: List[Dict[str, Any]] = field(default_factory=list)
    spike_filter: SpikeFilterConfig = field(default_factory=SpikeFilterConfig)
    tick_store: TickStoreConfig = field(default_factory=TickStoreConfig)
    builder: BuilderConfig = field(default_factory=BuilderConfig)
    gap_detector: GapDetectorConfig = field(default_factory=GapDetectorConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    healing: HealingConfig = field(default_factory=HealingConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    markets: MarketsConfig = field(default_factory=MarketsConfig)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "EngineConfig":
        """
        Build a configuration from a parsed YAML mapping.

        Raises:
            InvalidConfigError: on unknown keys or invalid values
        """
        raw = dict(raw or {})
        config = cls(
            environment=raw.pop("environment", "dev"),
            instruments=list(raw.pop("instruments", None) or []),
        )

        spike_raw = dict(raw.pop("spike_filter", None) or {})
        for key in ("tick_thresholds", "candle_thresholds"):
            if key in spike_raw:
                spike_raw[key] = _class_map(key, spike_raw[key])
        config.spike_filter = _section(SpikeFilterConfig, "spike_filter", spike_raw)
        config.tick_store = _section(TickStoreConfig, "tick_store", raw.pop("tick_store", None))
        config.builder = _section(BuilderConfig, "builder", raw.pop("builder", None))
        config.gap_detector = _section(GapDetectorConfig, "gap_detector", raw.pop("gap_detector", None))

        providers_raw = dict(raw.pop("providers", None) or {})
        defaults = ProviderConfig()
        for name in ("polygon", "finnhub"):
            if name in providers_raw:
                vendor_raw = {"min_interval_seconds": getattr(defaults, name).min_interval_seconds}
                vendor_raw.update(providers_raw[name] or {})
                providers_raw[name] = _section(VendorConfig, f"providers.{name}", vendor_raw)
        config.providers = _section(ProviderConfig, "providers", providers_raw)

        healing_raw = dict(raw.pop("healing", None) or {})
        if "integrity_resolutions" in healing_raw:
            healing_raw["integrity_resolutions"] = [
                parse_resolution(r) for r in healing_raw["integrity_resolutions"]
            ]
        if "intervals" in healing_raw:
            intervals = HealingConfig().intervals
            intervals.update(healing_raw["intervals"] or {})
            healing_raw["intervals"] = intervals
        config.healing = _section(HealingConfig, "healing", healing_raw)

        config.feed = _section(FeedConfig, "feed", raw.pop("feed", None))
        config.storage = _section(StorageConfig, "storage", raw.pop("storage", None))
        config.monitoring = _section(MonitoringConfig, "monitoring", raw.pop("monitoring", None))

        markets_raw = dict(raw.pop("markets", None) or {})
        if "us_holidays" in markets_raw:
            markets_raw["us_holidays"] = _holiday_map(markets_raw["us_holidays"])
        config.markets = _section(MarketsConfig, "markets", markets_raw)

        if raw:
            raise InvalidConfigError(
                "Unknown configuration sections",
                sections=sorted(raw)
            )

        config.apply_environment()
        config.validate()
        return config

    def apply_environment(self, environ: Optional[Dict[str, str]] = None) -> None:
        """Fill API keys from POLYGON_API_KEY / FINNHUB_API_KEY when unset."""
        env = os.environ if environ is None else environ
        if not self.providers.polygon.api_key:
            self.providers.polygon.api_key = env.get("POLYGON_API_KEY")
        if not self.providers.finnhub.api_key:
            self.providers.finnhub.api_key = env.get("FINNHUB_API_KEY")
        if not self.feed.api_key:
            self.feed.api_key = self.providers.finnhub.api_key

    def validate(self) -> None:
        """
        Validate value ranges.

        Raises:
            InvalidConfigError: if any value is out of range
        """
        if not 0.0 < self.builder.min_source_coverage <= 1.0:
            raise InvalidConfigError(
                "Coverage ratio must be in (0, 1]",
                key="builder.min_source_coverage", value=self.builder.min_source_coverage
            )
        if not 0.0 < self.providers.min_coverage <= 1.0:
            raise InvalidConfigError(
                "Coverage ratio must be in (0, 1]",
                key="providers.min_coverage", value=self.providers.min_coverage
            )
        if self.providers.strategy not in ("primary_first", "primary_only"):
            raise InvalidConfigError(
                "Unknown provider strategy",
                strategy=self.providers.strategy
            )
        if self.storage.backend not in ("memory", "sqlite"):
            raise InvalidConfigError(
                "Unknown storage backend",
                backend=self.storage.backend
            )
        for name, seconds in self.healing.intervals.items():
            if seconds <= 0:
                raise InvalidConfigError(
                    "Scheduler interval must be positive",
                    task=name, seconds=seconds
                )
        positive = {
            "tick_store.buffer_size": self.tick_store.buffer_size,
            "tick_store.flush_threshold": self.tick_store.flush_threshold,
            "tick_store.batch_size": self.tick_store.batch_size,
            "healing.max_attempts": self.healing.max_attempts,
            "healing.circuit_failure_threshold": self.healing.circuit_failure_threshold,
            "providers.timeout_seconds": self.providers.timeout_seconds,
            "providers.max_retries": self.providers.max_retries,
        }
        for key, value in positive.items():
            if value <= 0:
                raise InvalidConfigError("Value must be positive", key=key, value=value)
        for klass, threshold in self.spike_filter.tick_thresholds.items():
            if threshold <= 0:
                raise InvalidConfigError(
                    "Spike threshold must be positive",
                    instrument_class=klass.value, threshold=threshold
                )


def load_config(path: Union[str, Path] = "config/config.yaml") -> EngineConfig:
    """
    Load configuration from a YAML file.

    Raises:
        MissingConfigError: if the file does not exist
        InvalidConfigError: if the file cannot be parsed or fails validation
    """
    path = Path(path)
    if not path.exists():
        raise MissingConfigError("Configuration file not found", path=str(path))

    with open(path, 'r') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidConfigError("Configuration file is not valid YAML", path=str(path), error=str(e))

    if raw is not None and not isinstance(raw, dict):
        raise InvalidConfigError("Configuration root must be a mapping", path=str(path))

    return EngineConfig.from_dict(raw)


def _section(cls, name: str, raw: Optional[Dict[str, Any]]):
    """Instantiate a section dataclass, rejecting unknown keys."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise InvalidConfigError("Configuration section must be a mapping", section=name)
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise InvalidConfigError(
            "Unknown configuration keys",
            section=name, keys=sorted(unknown)
        )
    return cls(**raw)


def _class_map(name: str, raw: Dict[str, Any]) -> Dict[InstrumentClass, float]:
    defaults = (
        C.DEFAULT_TICK_SPIKE_THRESHOLDS if name == "tick_thresholds"
        else C.DEFAULT_CANDLE_SPIKE_THRESHOLDS
    )
    result = dict(defaults)
    for key, value in (raw or {}).items():
        try:
            klass = InstrumentClass(str(key).lower())
        except ValueError:
            raise InvalidConfigError(
                "Unknown instrument class", key=f"spike_filter.{name}", value=key
            ) from None
        result[klass] = float(value)
    return result


def _holiday_map(raw: Any) -> Dict[date, str]:
    if not isinstance(raw, dict):
        raise InvalidConfigError("Holidays must map dates to names", key="markets.us_holidays")
    result = {}
    for key, name in raw.items():
        try:
            day = key if isinstance(key, date) else date.fromisoformat(str(key))
        except ValueError:
            raise InvalidConfigError(
                "Invalid holiday date", key="markets.us_holidays", value=key
            ) from None
        result[day] = str(name)
    return result
