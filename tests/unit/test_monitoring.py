"""
Unit tests for logging and metrics.

Covers:
- Keyword formatting of the engine logger
- Handler setup (console + rotating file)
- Counter labels, snapshot and JSON export
"""

import json
import logging
from datetime import datetime, timezone


class TestEngineLogger:

    def test_keyword_formatting(self):
        from candlekeeper.monitoring.logger import EngineLogger
        logger = EngineLogger("candlekeeper.test")
        assert logger._format_message("Candle built", instrument="EURUSD", resolution="5m") == (
            "Candle built | instrument=EURUSD | resolution=5m"
        )
        assert logger._format_message("Plain") == "Plain"

    def test_loggers_are_cached(self):
        from candlekeeper.monitoring.logger import get_logger
        assert get_logger("candlekeeper.cache") is get_logger("candlekeeper.cache")

    def test_messages_reach_logging(self, caplog):
        from candlekeeper.monitoring.logger import get_logger
        with caplog.at_level(logging.WARNING, logger="candlekeeper.test_warning"):
            get_logger("candlekeeper.test_warning").warning("Gap found", missing=10)
        assert "Gap found | missing=10" in caplog.text

    def test_setup_logger_with_file(self, tmp_path):
        from candlekeeper.monitoring.logger import setup_logger
        log_file = tmp_path / "logs" / "engine.log"

        root = setup_logger(str(log_file), level="debug")
        try:
            again = setup_logger(str(log_file), level="debug")
            assert root is again
            assert len(root.handlers) == 2
            assert root.level == logging.DEBUG

            root.info("written to file")
            for handler in root.handlers:
                handler.flush()
            assert "written to file" in log_file.read_text()
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            root.setLevel(logging.NOTSET)


class TestMetricsTracker:

    def test_labelled_counters(self):
        from candlekeeper.monitoring.metrics_tracker import MetricsTracker
        metrics = MetricsTracker()

        metrics.increment('ticks_rejected', label="spike")
        metrics.increment('ticks_rejected', 2, label="invalid_price")
        metrics.increment('candles_built')

        snapshot = metrics.snapshot()
        assert metrics.get('ticks_rejected') == 3
        assert snapshot['candles_built'] == 1
        assert snapshot['gaps_detected'] == 0
        assert snapshot['by_label']['ticks_rejected'] == {"spike": 1, "invalid_price": 2}

    def test_histories_are_bounded(self):
        from candlekeeper.monitoring.metrics_tracker import MetricsTracker
        metrics = MetricsTracker(max_history=2)
        start = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)
        for i in range(3):
            metrics.record_heal("EURUSD", "1m", start, start, i, True)
        assert [h['candles'] for h in metrics.heal_history] == [1, 2]

    def test_export(self, tmp_path):
        from candlekeeper.monitoring.metrics_tracker import MetricsTracker
        metrics = MetricsTracker()
        start = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)
        metrics.increment('candles_healed', 10)
        metrics.record_heal("EURUSD", "1m", start, start, 10, True)
        metrics.record_health({'overall': "healthy"})
        metrics.set_circuit_state({'open': True, 'trips': 1})

        output = tmp_path / "metrics" / "metrics.json"
        metrics.export_metrics(str(output))

        exported = json.loads(output.read_text())
        assert exported['metrics']['candles_healed'] == 10
        assert exported['metrics']['circuit_breaker'] == {'open': True, 'trips': 1}
        assert exported['heals'][0]['instrument'] == "EURUSD"
        assert exported['health'][0]['overall'] == "healthy"
