"""Polygon.io aggregates provider - the primary historical vendor.

Ticker format: ``C:EURUSD`` for currencies and metals, ``X:BTCUSD`` for
crypto, plain tickers for equities. The free tier allows 5 requests per
minute, hence the default 12 second pacing.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.constants import InstrumentClass, Resolution
from ..core.exceptions import ProviderError
from ..core.types import Instrument
from .base import HTTPProvider

# (multiplier, timespan) per resolution
_RESOLUTION_MAP = {
    Resolution.M1: (1, "minute"),
    Resolution.M5: (5, "minute"),
    Resolution.M15: (15, "minute"),
    Resolution.M30: (30, "minute"),
    Resolution.H1: (1, "hour"),
    Resolution.H4: (4, "hour"),
    Resolution.D1: (1, "day"),
}

_PREFIX = {
    InstrumentClass.FOREX: "C:",
    InstrumentClass.METAL: "C:",
    InstrumentClass.CRYPTO: "X:",
    InstrumentClass.EQUITY: "",
}


def _epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


class PolygonProvider(HTTPProvider):
    """Fetches OHLCV aggregates from ``/v2/aggs``."""

    name = "polygon"
    base_url = "https://api.polygon.io"

    def ticker(self, instrument: Instrument) -> str:
        explicit = instrument.provider_symbol(self.name)
        if explicit:
            return explicit
        return f"{_PREFIX.get(instrument.instrument_class, '')}{instrument.code}"

    def supports(self, instrument: Instrument, resolution: Optional[Resolution] = None) -> bool:
        if not self.api_key:
            return False
        if resolution is not None and resolution not in _RESOLUTION_MAP:
            return False
        return instrument.instrument_class in _PREFIX

    async def fetch_chunk(
        self,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Dict[str, Any]]:
        multiplier, timespan = _RESOLUTION_MAP[resolution]
        path = (
            f"/v2/aggs/ticker/{self.ticker(instrument)}/range/"
            f"{multiplier}/{timespan}/{_epoch_ms(start)}/{_epoch_ms(end)}"
        )
        data = await self._get_json(path, {
            "adjusted": "true",
            "sort": "asc",
            "limit": 50000,
            "apiKey": self.api_key,
        })

        if not isinstance(data, dict):
            raise ProviderError("Unexpected polygon response", provider=self.name)
        if data.get("status") == "ERROR":
            raise ProviderError(
                "Polygon returned an error",
                provider=self.name, error=data.get("error") or data.get("message")
            )

        rows = []
        for bar in data.get("results") or []:
            rows.append({
                "timestamp": datetime.fromtimestamp(bar["t"] / 1000, tz=timezone.utc),
                "open": bar.get("o"),
                "high": bar.get("h"),
                "low": bar.get("l"),
                "close": bar.get("c"),
                "volume": bar.get("v", 0),
            })

        self.logger.debug(
            "Polygon chunk fetched",
            instrument=instrument.code,
            resolution=resolution.value,
            bars=len(rows)
        )
        return rows
