"""
Metrics Tracker - Track engine counters over time.

Exports metrics for:
- Data quality analysis (rejections, incomplete candles)
- Healing effectiveness
- Alerting
"""

from collections import Counter, deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import json


COUNTERS = (
    'ticks_received',
    'ticks_accepted',
    'ticks_rejected',
    'ticks_flushed',
    'tick_write_failures',
    'candles_built',
    'candles_incomplete',
    'candles_healed',
    'gaps_detected',
    'backfill_requests',
    'backfill_successes',
    'backfill_failures',
    'circuit_breaker_trips',
    'task_failures',
)


class MetricsTracker:
    """
    Track engine metrics over time.

    Metrics tracked:
    - Monotonic counters (``COUNTERS``), optionally broken down by label
    - Bounded history of healing runs and health snapshots
    """

    def __init__(self, max_history: int = 1000):
        """
        Initialize metrics tracker.

        Args:
            max_history: Max history entries to keep in memory
        """
        self.max_history = max_history

        self.counters: Counter = Counter({name: 0 for name in COUNTERS})
        self.by_label: Dict[str, Counter] = {}

        # History buffers
        self.heal_history: deque = deque(maxlen=max_history)
        self.health_history: deque = deque(maxlen=max_history)

        self.circuit_state: Dict[str, Any] = {'open': False}

        from .logger import get_logger
        self.logger = get_logger(__name__)

    def increment(self, name: str, amount: int = 1, label: Optional[str] = None) -> None:
        """Increase a counter, optionally also under ``label`` (e.g. a rejection reason)."""
        self.counters[name] += amount
        if label is not None:
            self.by_label.setdefault(name, Counter())[label] += amount

    def get(self, name: str) -> int:
        return self.counters[name]

    def record_heal(
        self,
        instrument: str,
        resolution: str,
        start: datetime,
        end: datetime,
        candles: int,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        """Record one healing attempt."""
        self.heal_history.append({
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'instrument': instrument,
            'resolution': resolution,
            'start': start.isoformat(),
            'end': end.isoformat(),
            'candles': candles,
            'success': success,
            'error': error,
        })

    def record_health(self, report: Dict[str, Any]) -> None:
        """Record a health check snapshot."""
        self.health_history.append({
            'timestamp': datetime.now(timezone.utc).isoformat(),
            **report
        })

    def set_circuit_state(self, status: Dict[str, Any]) -> None:
        self.circuit_state = dict(status)

    def snapshot(self) -> Dict[str, Any]:
        """Current counters plus circuit breaker state."""
        return {
            **dict(self.counters),
            'by_label': {name: dict(c) for name, c in self.by_label.items()},
            'circuit_breaker': dict(self.circuit_state),
        }

    def export_metrics(self, output_file: str) -> None:
        """Write the snapshot and histories to a JSON file."""
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump({
                'exported_at': datetime.now(timezone.utc).isoformat(),
                'metrics': self.snapshot(),
                'heals': list(self.heal_history),
                'health': list(self.health_history),
            }, f, indent=2, default=str)

        self.logger.info(f"Metrics exported to {output_file}")
