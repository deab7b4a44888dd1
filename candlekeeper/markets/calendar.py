"""
Market Calendar - Decides whether an instrument's market is trading.

Based on UTC time:
- Forex / metals: Sunday 21:00 → Friday 22:00 UTC, closed Jan 1 and Dec 25
- Equities: Mon-Fri 09:00 → 01:00 UTC (pre-market through after-hours),
  closed on US exchange holidays
- Crypto: 24/7
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

from ..core.constants import InstrumentClass
from ..core.types import ensure_utc


@dataclass(frozen=True)
class MarketStatus:
    """Open/closed answer with a human readable reason or session name."""
    open: bool
    reason: str

    def __bool__(self) -> bool:
        return self.open


FIXED_HOLIDAYS: Dict[Tuple[int, int], str] = {
    (1, 1): "New Year's Day",
    (12, 25): "Christmas Day",
}
"""Closed for every instrument class except crypto."""

US_HOLIDAYS: Dict[date, str] = {
    date(2025, 1, 20): "MLK Day",
    date(2025, 2, 17): "Presidents Day",
    date(2025, 5, 26): "Memorial Day",
    date(2025, 7, 4): "Independence Day",
    date(2025, 9, 1): "Labor Day",
    date(2025, 11, 27): "Thanksgiving",
    date(2026, 1, 19): "MLK Day",
    date(2026, 2, 16): "Presidents Day",
    date(2026, 5, 25): "Memorial Day",
    date(2026, 7, 3): "Independence Day (Observed)",
    date(2026, 9, 7): "Labor Day",
    date(2026, 11, 26): "Thanksgiving",
}
"""US exchange holidays; equities only."""

# Weekday numbers (Python: Monday=0 ... Sunday=6)
_FRIDAY = 4
_SATURDAY = 5
_SUNDAY = 6


class MarketCalendar:
    """
    Answers ``is_open`` for an instrument class at a UTC timestamp.

    Extra US holidays can be supplied from configuration.
    """

    FOREX_OPEN_SUNDAY = 21 * 60
    FOREX_CLOSE_FRIDAY = 22 * 60
    EQUITY_OPEN = 9 * 60
    EQUITY_REGULAR_OPEN = 14 * 60 + 30
    EQUITY_REGULAR_CLOSE = 21 * 60
    EQUITY_AFTER_HOURS_END = 1 * 60

    def __init__(self, extra_us_holidays: Optional[Dict[date, str]] = None):
        self.us_holidays = dict(US_HOLIDAYS)
        if extra_us_holidays:
            self.us_holidays.update(extra_us_holidays)

    def is_open(self, instrument_class: InstrumentClass, timestamp: datetime) -> MarketStatus:
        """Determine whether the market for ``instrument_class`` trades at ``timestamp``."""
        ts = ensure_utc(timestamp)

        if instrument_class == InstrumentClass.CRYPTO:
            return MarketStatus(True, "24/7")
        if instrument_class in (InstrumentClass.FOREX, InstrumentClass.METAL):
            return self._forex_status(ts)
        if instrument_class == InstrumentClass.EQUITY:
            return self._equity_status(ts)

        return MarketStatus(True, "unknown")

    def was_open(self, instrument_class: InstrumentClass, start: datetime, end: datetime) -> bool:
        """
        True if the market was open at any sampled point of [start, end).

        Samples the start, the midpoint and the last minute of the span.
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            return self.is_open(instrument_class, start).open

        last = max(start, end - timedelta(minutes=1))
        middle = start + (end - start) / 2
        return any(self.is_open(instrument_class, ts).open for ts in (start, middle, last))

    def count_open(
        self,
        instrument_class: InstrumentClass,
        period_starts: Iterable[datetime]
    ) -> int:
        """Number of period starts that fall into open market time."""
        return sum(1 for ts in period_starts if self.is_open(instrument_class, ts).open)

    def holiday(self, timestamp: datetime, include_us: bool = False) -> Optional[str]:
        ts = ensure_utc(timestamp)
        name = FIXED_HOLIDAYS.get((ts.month, ts.day))
        if name is None and include_us:
            name = self.us_holidays.get(ts.date())
        return name

    # ── Rules ────────────────────────────────────────────

    def _forex_status(self, ts: datetime) -> MarketStatus:
        holiday = self.holiday(ts)
        if holiday:
            return MarketStatus(False, holiday)

        day = ts.weekday()
        minutes = ts.hour * 60 + ts.minute

        if day == _SATURDAY:
            return MarketStatus(False, "Weekend - Market closed")

        if day == _SUNDAY:
            if minutes >= self.FOREX_OPEN_SUNDAY:
                return MarketStatus(True, "sydney")
            return MarketStatus(False, "Weekend - Opens Sunday 21:00 UTC")

        if day == _FRIDAY and minutes >= self.FOREX_CLOSE_FRIDAY:
            return MarketStatus(False, "Weekend - Market closed")

        return MarketStatus(True, "regular")

    def _equity_status(self, ts: datetime) -> MarketStatus:
        day = ts.weekday()
        if day in (_SATURDAY, _SUNDAY):
            return MarketStatus(False, "Weekend - US market closed")

        holiday = self.holiday(ts, include_us=True)
        if holiday:
            return MarketStatus(False, holiday)

        minutes = ts.hour * 60 + ts.minute
        if self.EQUITY_REGULAR_OPEN <= minutes < self.EQUITY_REGULAR_CLOSE:
            return MarketStatus(True, "regular")
        if self.EQUITY_OPEN <= minutes < self.EQUITY_REGULAR_OPEN:
            return MarketStatus(True, "pre-market")
        if minutes >= self.EQUITY_REGULAR_CLOSE or minutes < self.EQUITY_AFTER_HOURS_END:
            return MarketStatus(True, "after-hours")

        return MarketStatus(False, "Outside trading hours")
