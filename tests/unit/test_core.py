"""
Unit tests for the core package.

Covers:
- Period alignment and the resolution chain
- Timestamp parsing
- Candle / backfill item validation
- Configuration loading and validation
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest


UTC = timezone.utc
WED = datetime(2025, 3, 12, tzinfo=UTC)  # a regular Wednesday

ROOT = Path(__file__).resolve().parents[2]


# ══════════════════════════════════════════════════════════
#  Timeframes
# ══════════════════════════════════════════════════════════


class TestTimeframes:

    def test_period_start_alignment(self):
        """Periods align on the epoch: 5m on the 5 minute grid, 4h on 00/04/08 UTC."""
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.timeframes import period_start

        ts = WED.replace(hour=10, minute=7, second=33)
        assert period_start(ts, Resolution.M1) == WED.replace(hour=10, minute=7)
        assert period_start(ts, Resolution.M5) == WED.replace(hour=10, minute=5)
        assert period_start(ts, Resolution.H4) == WED.replace(hour=8)
        assert period_start(ts, Resolution.D1) == WED

    def test_naive_timestamps_are_utc(self):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.timeframes import period_start

        naive = datetime(2025, 3, 12, 10, 7, 33)
        assert period_start(naive, Resolution.M1) == WED.replace(hour=10, minute=7)

    def test_last_closed_period(self):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.timeframes import last_closed_period

        now = WED.replace(hour=10, minute=7, second=30)
        assert last_closed_period(now, Resolution.M1) == WED.replace(hour=10, minute=6)
        assert last_closed_period(now, Resolution.M5) == WED.replace(hour=10, minute=0)

    def test_is_period_closed(self):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.timeframes import is_period_closed

        start = WED.replace(hour=10)
        assert not is_period_closed(start, Resolution.M1, start + timedelta(seconds=59))
        assert is_period_closed(start, Resolution.M1, start + timedelta(minutes=1))

    def test_iter_periods_skips_partial_first_period(self):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.timeframes import iter_periods

        periods = list(iter_periods(WED.replace(hour=10, second=30), WED.replace(hour=10, minute=5), Resolution.M1))
        assert periods[0] == WED.replace(hour=10, minute=1)
        assert len(periods) == 4

    def test_chain_sources(self):
        """Every resolution above the base is built from the one directly below."""
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.timeframes import higher_than, source_of, sources_per_period

        assert source_of(Resolution.M1) is None
        assert source_of(Resolution.M5) == Resolution.M1
        assert source_of(Resolution.D1) == Resolution.H4
        assert sources_per_period(Resolution.M5) == 5
        assert sources_per_period(Resolution.H4) == 4
        assert sources_per_period(Resolution.D1) == 6
        assert higher_than(Resolution.H4) == [Resolution.D1]

    def test_parse_resolution(self):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.exceptions import UnknownResolutionError
        from candlekeeper.core.timeframes import parse_resolution

        assert parse_resolution(" 5M ") == Resolution.M5
        assert parse_resolution(Resolution.H1) == Resolution.H1
        with pytest.raises(UnknownResolutionError):
            parse_resolution("2m")

    def test_parse_timestamp(self):
        from candlekeeper.core.timeframes import parse_timestamp

        ts = WED.replace(hour=10)
        assert parse_timestamp(int(ts.timestamp() * 1000)) == ts
        assert parse_timestamp(datetime(2025, 3, 12, 10)) == ts
        assert parse_timestamp(True) is None
        assert parse_timestamp("not a time") is None
        assert parse_timestamp(None) is None


# ══════════════════════════════════════════════════════════
#  Types
# ══════════════════════════════════════════════════════════


class TestCandle:

    def _candle(self, **overrides):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.types import Candle
        fields = dict(
            instrument="EURUSD", resolution=Resolution.M1, period_start=WED.replace(hour=10),
            open=Decimal("1.1000"), high=Decimal("1.1010"), low=Decimal("1.0990"),
            close=Decimal("1.1005"), volume=Decimal("3"),
        )
        fields.update(overrides)
        return Candle(**fields)

    def test_valid_candle(self):
        candle = self._candle()
        candle.validate()
        assert candle.is_valid()
        assert candle.period_end == WED.replace(hour=10, minute=1)
        assert candle.range == Decimal("0.0020")

    def test_high_below_close_is_invalid(self):
        from candlekeeper.core.exceptions import InvalidCandleError
        with pytest.raises(InvalidCandleError):
            self._candle(high=Decimal("1.1001")).validate()

    def test_low_above_open_is_invalid(self):
        from candlekeeper.core.exceptions import InvalidCandleError
        with pytest.raises(InvalidCandleError):
            self._candle(low=Decimal("1.1002")).validate()

    def test_non_positive_price_is_invalid(self):
        assert not self._candle(low=Decimal("0")).is_valid()

    def test_negative_volume_is_invalid(self):
        assert not self._candle(volume=Decimal("-1")).is_valid()

    def test_flat_candle(self):
        price = Decimal("1.1")
        assert self._candle(open=price, high=price, low=price, close=price).is_flat
        assert not self._candle().is_flat

    def test_naive_period_start_becomes_utc(self):
        candle = self._candle(period_start=datetime(2025, 3, 12, 10))
        assert candle.period_start.tzinfo == UTC


class TestBackfillItem:

    def test_priority_range(self):
        from candlekeeper.core.constants import Resolution
        from candlekeeper.core.types import BackfillItem

        with pytest.raises(ValueError):
            BackfillItem("EURUSD", Resolution.M1, WED, WED + timedelta(minutes=5), priority=11)

    def test_range_key_and_terminal(self):
        from candlekeeper.core.constants import BackfillStatus, Resolution
        from candlekeeper.core.types import BackfillItem

        item = BackfillItem("EURUSD", Resolution.M1, WED, WED + timedelta(minutes=5))
        assert item.range_key == ("EURUSD", Resolution.M1, WED, WED + timedelta(minutes=5))
        assert not item.is_terminal()
        item.status = BackfillStatus.FAILED
        assert item.is_terminal()


# ══════════════════════════════════════════════════════════
#  Configuration
# ══════════════════════════════════════════════════════════


class TestConfig:

    def test_defaults(self):
        from candlekeeper.core.config import EngineConfig
        config = EngineConfig.from_dict({})
        assert config.healing.circuit_failure_threshold == 2
        assert config.healing.circuit_cooldown_minutes == 3
        assert config.gap_detector.provider_delay_minutes == 20
        assert config.providers.polygon.min_interval_seconds == 12.0

    def test_shipped_config_loads(self):
        from candlekeeper.core.config import load_config
        from candlekeeper.core.constants import Resolution

        config = load_config(ROOT / "config" / "config.yaml")
        assert len(config.instruments) == 12
        assert config.healing.integrity_resolutions == [Resolution.M1, Resolution.M5, Resolution.H1]
        assert config.providers.finnhub.min_interval_seconds == 1

    def test_threshold_override_keeps_other_classes(self):
        from candlekeeper.core.config import EngineConfig
        from candlekeeper.core.constants import InstrumentClass

        config = EngineConfig.from_dict({"spike_filter": {"tick_thresholds": {"forex": 0.4}}})
        assert config.spike_filter.tick_thresholds[InstrumentClass.FOREX] == 0.4
        assert config.spike_filter.tick_thresholds[InstrumentClass.METAL] == 0.8

    def test_interval_override_merges_defaults(self):
        from candlekeeper.core.config import EngineConfig
        config = EngineConfig.from_dict({"healing": {"intervals": {"drain_queue": 60}}})
        assert config.healing.intervals["drain_queue"] == 60
        assert config.healing.intervals["heal_primary"] == 300

    def test_extra_us_holidays(self):
        import datetime as dt
        from candlekeeper.core.config import EngineConfig
        from candlekeeper.core.constants import InstrumentClass
        from candlekeeper.core.exceptions import InvalidConfigError
        from candlekeeper.markets.calendar import MarketCalendar

        config = EngineConfig.from_dict({"markets": {"us_holidays": {"2025-03-12": "Closure"}}})
        assert config.markets.us_holidays == {dt.date(2025, 3, 12): "Closure"}

        calendar = MarketCalendar(config.markets.us_holidays)
        noon = dt.datetime(2025, 3, 12, 15, 0, tzinfo=dt.timezone.utc)
        assert not calendar.is_open(InstrumentClass.EQUITY, noon).open
        assert calendar.is_open(InstrumentClass.FOREX, noon).open

        with pytest.raises(InvalidConfigError):
            EngineConfig.from_dict({"markets": {"us_holidays": {"someday": "x"}}})

    def test_unknown_section_rejected(self):
        from candlekeeper.core.config import EngineConfig
        from candlekeeper.core.exceptions import InvalidConfigError
        with pytest.raises(InvalidConfigError):
            EngineConfig.from_dict({"execution": {}})

    def test_unknown_key_rejected(self):
        from candlekeeper.core.config import EngineConfig
        from candlekeeper.core.exceptions import InvalidConfigError
        with pytest.raises(InvalidConfigError):
            EngineConfig.from_dict({"tick_store": {"buffer": 10}})

    def test_out_of_range_values_rejected(self):
        from candlekeeper.core.config import EngineConfig
        from candlekeeper.core.exceptions import InvalidConfigError
        with pytest.raises(InvalidConfigError):
            EngineConfig.from_dict({"builder": {"min_source_coverage": 1.5}})
        with pytest.raises(InvalidConfigError):
            EngineConfig.from_dict({"healing": {"intervals": {"cleanup": 0}}})
        with pytest.raises(InvalidConfigError):
            EngineConfig.from_dict({"storage": {"backend": "postgres"}})

    def test_api_keys_from_environment(self):
        from candlekeeper.core.config import EngineConfig
        config = EngineConfig()
        config.apply_environment({"POLYGON_API_KEY": "pk", "FINNHUB_API_KEY": "fk"})
        assert config.providers.polygon.api_key == "pk"
        assert config.providers.finnhub.api_key == "fk"
        assert config.feed.api_key == "fk"

    def test_missing_file(self, tmp_path):
        from candlekeeper.core.config import load_config
        from candlekeeper.core.exceptions import MissingConfigError
        with pytest.raises(MissingConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        from candlekeeper.core.config import load_config
        from candlekeeper.core.exceptions import InvalidConfigError
        path = tmp_path / "broken.yaml"
        path.write_text("instruments: [1, 2\n")
        with pytest.raises(InvalidConfigError):
            load_config(path)

    def test_exception_context_in_message(self):
        from candlekeeper.core.exceptions import InvalidConfigError
        error = InvalidConfigError("Bad value", key="x", value=3)
        assert str(error) == "Bad value [key=x, value=3]"
        assert error.context == {"key": "x", "value": 3}
