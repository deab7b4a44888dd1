"""
Spike Filter - Rejects implausible price jumps.

Detects:
- Tick prices that move more than the class threshold from the last
  accepted price
- Candles whose open gaps, or whose extremes run, too far from the previous
  close

Thresholds widen when the reference price is stale and when the instrument
has recently been volatile.
"""

from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from ..core.config import SpikeFilterConfig
from ..core.constants import InstrumentClass
from ..core.types import Candle, SpikeCheck, ensure_utc
from ..monitoring.logger import get_logger


class SpikeFilter:
    """
    Per-instrument spike detection with volatility-adjusted thresholds.

    One instance is shared by the tick store and the healing orchestrator.
    """

    def __init__(
        self,
        config: Optional[SpikeFilterConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or SpikeFilterConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # instrument -> (price, timestamp) of the last accepted price
        self.last_prices: Dict[str, Tuple[Decimal, datetime]] = {}
        self.price_history: Dict[str, Deque[float]] = {}
        self.volatility: Dict[str, float] = {}

        self.ticks_checked = 0
        self.spikes_rejected = 0
        self.spikes_by_instrument: Dict[str, int] = {}

        self.logger = get_logger(__name__)

    # ── Tick level ───────────────────────────────────────

    def threshold_for(
        self,
        instrument: str,
        instrument_class: InstrumentClass,
        now: Optional[datetime] = None
    ) -> float:
        """Effective tick threshold (percent) for ``instrument`` at ``now``."""
        base = self.config.tick_thresholds.get(instrument_class, self.config.fallback_threshold)
        threshold = base

        last = self.last_prices.get(instrument)
        if last is not None:
            now = ensure_utc(now) if now else self._clock()
            if (now - last[1]).total_seconds() > self.config.stale_seconds:
                threshold *= 2

        vol = self.volatility.get(instrument)
        if vol is not None and vol > threshold:
            threshold = max(threshold, min(vol * 1.5, base * self.config.max_multiplier))

        return threshold

    def check(
        self,
        instrument: str,
        instrument_class: InstrumentClass,
        price: Decimal,
        now: Optional[datetime] = None
    ) -> SpikeCheck:
        """
        Check a tick price against the last accepted price.

        Never raises; rejections are counted and logged.
        """
        self.ticks_checked += 1

        last = self.last_prices.get(instrument)
        if last is None:
            return SpikeCheck(accepted=True, reason="no_history")

        last_price = last[0]
        change_pct = float(abs((Decimal(price) - last_price) / last_price) * 100)
        threshold = self.threshold_for(instrument, instrument_class, now)

        if change_pct > threshold:
            self.spikes_rejected += 1
            self.spikes_by_instrument[instrument] = self.spikes_by_instrument.get(instrument, 0) + 1
            self.logger.warning(
                "Spike rejected",
                instrument=instrument,
                last_price=last_price,
                price=price,
                change_pct=f"{change_pct:.3f}",
                threshold=f"{threshold:.3f}"
            )
            return SpikeCheck(
                accepted=False,
                reason=f"{change_pct:.3f}% exceeds {threshold:.3f}% threshold",
                change_pct=change_pct,
                threshold=threshold,
                last_price=last_price,
            )

        return SpikeCheck(accepted=True, change_pct=change_pct, threshold=threshold, last_price=last_price)

    def update_price(self, instrument: str, price: Decimal, timestamp: Optional[datetime] = None) -> None:
        """Record an accepted price and recompute volatility."""
        timestamp = ensure_utc(timestamp) if timestamp else self._clock()
        self.last_prices[instrument] = (Decimal(price), timestamp)

        history = self.price_history.get(instrument)
        if history is None:
            history = deque(maxlen=self.config.history_length)
            self.price_history[instrument] = history
        history.append(float(price))

        self._update_volatility(instrument)

    def _update_volatility(self, instrument: str) -> None:
        """Volatility = mean + 2 std of absolute percent step changes."""
        history = self.price_history.get(instrument)
        if history is None or len(history) < self.config.min_samples:
            return

        prices = np.asarray(history, dtype=float)
        changes = np.abs(np.diff(prices) / prices[:-1]) * 100
        self.volatility[instrument] = float(changes.mean() + 2 * changes.std())

    def seed(self, closes: Dict[str, List[Tuple[datetime, float]]]) -> int:
        """
        Load reference prices from persisted base candles.

        Args:
            closes: instrument -> ascending (period_start, close) pairs

        Returns:
            Number of instruments seeded
        """
        seeded = 0
        for instrument, rows in closes.items():
            if not rows:
                continue
            for timestamp, close in rows[-self.config.history_length:]:
                self.update_price(instrument, Decimal(str(close)), timestamp)
            seeded += 1

        self.logger.info("Spike filter seeded", instruments=seeded)
        return seeded

    def reset(self, instrument: str, price: Decimal, timestamp: Optional[datetime] = None) -> None:
        """Replace the reference price after a confirmed heal and drop history."""
        self.last_prices[instrument] = (Decimal(price), ensure_utc(timestamp) if timestamp else self._clock())
        self.price_history.pop(instrument, None)
        self.volatility.pop(instrument, None)

    # ── Candle level ─────────────────────────────────────

    def check_candle(
        self,
        instrument_class: InstrumentClass,
        candle: Candle,
        previous_close: Optional[Decimal]
    ) -> SpikeCheck:
        """
        Check a candle against the previous close.

        Open gapping more than 2x the candle threshold, or high/low moving more
        than 3x, is a spike.
        """
        if not previous_close:
            return SpikeCheck(accepted=True, reason="no_history")

        threshold = self.config.candle_thresholds.get(instrument_class, 1.0)
        prev = Decimal(previous_close)

        gap_pct = float(abs((candle.open - prev) / prev) * 100)
        if gap_pct > threshold * 2:
            return SpikeCheck(False, f"Gap of {gap_pct:.3f}%", gap_pct, threshold * 2, prev)

        for name, price in (("High", candle.high), ("Low", candle.low)):
            change = float(abs((price - prev) / prev) * 100)
            if change > threshold * 3:
                return SpikeCheck(False, f"{name} spike of {change:.3f}%", change, threshold * 3, prev)

        return SpikeCheck(accepted=True, change_pct=gap_pct, threshold=threshold * 2, last_price=prev)

    def get_stats(self) -> dict:
        return {
            'ticks_checked': self.ticks_checked,
            'spikes_rejected': self.spikes_rejected,
            'spikes_by_instrument': dict(self.spikes_by_instrument),
            'tracked_instruments': len(self.last_prices),
        }
