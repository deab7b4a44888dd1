"""Finnhub candle provider - the secondary historical vendor.

Forex and metals use ``/forex/candle`` with OANDA symbols, crypto uses
``/crypto/candle`` and equities ``/stock/candle``. The ``4h`` resolution is
not offered by Finnhub.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.constants import InstrumentClass, Resolution
from ..core.exceptions import ProviderError
from ..core.types import Instrument
from .base import HTTPProvider

# Finnhub resolution strings
_RESOLUTION_MAP = {
    Resolution.M1: "1",
    Resolution.M5: "5",
    Resolution.M15: "15",
    Resolution.M30: "30",
    Resolution.H1: "60",
    Resolution.D1: "D",
}

_ENDPOINTS = {
    InstrumentClass.FOREX: "/forex/candle",
    InstrumentClass.METAL: "/forex/candle",
    InstrumentClass.CRYPTO: "/crypto/candle",
    InstrumentClass.EQUITY: "/stock/candle",
}


def _to_forex_symbol(code: str) -> str:
    """Convert a 6-letter pair to Finnhub's OANDA format.

    Examples:
        ``EURUSD`` → ``OANDA:EUR_USD``
        ``XAUUSD`` → ``OANDA:XAU_USD``
    """
    return f"OANDA:{code[:3]}_{code[3:]}"


class FinnhubProvider(HTTPProvider):
    """Fetches OHLCV candles from Finnhub's REST API."""

    name = "finnhub"
    base_url = "https://finnhub.io/api/v1"

    def symbol(self, instrument: Instrument) -> str:
        explicit = instrument.provider_symbol(self.name)
        if explicit:
            return explicit
        if instrument.vendor_symbol:
            return instrument.vendor_symbol
        if instrument.instrument_class in (InstrumentClass.FOREX, InstrumentClass.METAL):
            return _to_forex_symbol(instrument.code)
        return instrument.code

    def supports(self, instrument: Instrument, resolution: Optional[Resolution] = None) -> bool:
        if not self.api_key:
            return False
        if resolution is not None and resolution not in _RESOLUTION_MAP:
            return False
        return instrument.instrument_class in _ENDPOINTS

    async def fetch_chunk(
        self,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Dict[str, Any]]:
        if resolution not in _RESOLUTION_MAP:
            raise ProviderError(
                "Resolution not offered by finnhub",
                provider=self.name, resolution=resolution.value
            )

        data = await self._get_json(_ENDPOINTS[instrument.instrument_class], {
            "symbol": self.symbol(instrument),
            "resolution": _RESOLUTION_MAP[resolution],
            "from": int(start.timestamp()),
            "to": int(end.timestamp()) - 1,
            "token": self.api_key,
        })

        if not isinstance(data, dict):
            raise ProviderError("Unexpected finnhub response", provider=self.name)
        status = data.get("s")
        if status == "no_data":
            return []
        if status != "ok":
            raise ProviderError("Finnhub returned an error", provider=self.name, status=status)

        times = data.get("t") or []
        volumes = data.get("v") or [0] * len(times)
        rows = []
        for i, t in enumerate(times):
            rows.append({
                "timestamp": datetime.fromtimestamp(t, tz=timezone.utc),
                "open": data["o"][i],
                "high": data["h"][i],
                "low": data["l"][i],
                "close": data["c"][i],
                "volume": volumes[i],
            })

        self.logger.debug(
            "Finnhub chunk fetched",
            instrument=instrument.code,
            resolution=resolution.value,
            bars=len(rows)
        )
        return rows
