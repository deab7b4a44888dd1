"""Symbol catalog - the fixed instrument universe the engine tracks."""

from typing import Any, Dict, Iterable, List, Optional

from ..core.constants import InstrumentClass, InstrumentTier
from ..core.exceptions import InvalidConfigError, UnknownInstrumentError
from ..core.types import Instrument


class SymbolCatalog:
    """
    Lookup table of instruments by internal code and by feed symbol.
    """

    def __init__(self, instruments: Iterable[Instrument]):
        self._by_code: Dict[str, Instrument] = {}
        self._by_vendor: Dict[str, Instrument] = {}
        for instrument in instruments:
            if instrument.code in self._by_code:
                raise InvalidConfigError("Duplicate instrument code", code=instrument.code)
            self._by_code[instrument.code] = instrument
            if instrument.vendor_symbol:
                self._by_vendor[instrument.vendor_symbol] = instrument

    @classmethod
    def from_config(cls, entries: List[Dict[str, Any]]) -> "SymbolCatalog":
        """
        Build a catalog from the ``instruments`` configuration list.

        Each entry needs ``code`` and ``class``; ``vendor_symbol``, ``tier``
        and ``providers`` (vendor name → ticker) are optional.
        """
        instruments = []
        for entry in entries:
            if "code" not in entry:
                raise InvalidConfigError("Instrument entry without code", entry=entry)
            code = str(entry["code"]).upper()
            try:
                klass = InstrumentClass(str(entry.get("class", "forex")).lower())
                tier = InstrumentTier(str(entry.get("tier", "primary")).lower())
            except ValueError as e:
                raise InvalidConfigError("Invalid instrument entry", code=code, error=str(e)) from None
            instruments.append(Instrument(
                code=code,
                instrument_class=klass,
                vendor_symbol=entry.get("vendor_symbol", ""),
                tier=tier,
                provider_symbols=dict(entry.get("providers") or {}),
            ))
        return cls(instruments)

    def __contains__(self, code: str) -> bool:
        return code in self._by_code

    def __iter__(self):
        return iter(self._by_code.values())

    def __len__(self) -> int:
        return len(self._by_code)

    def get(self, code: str) -> Instrument:
        """
        Raises:
            UnknownInstrumentError: if the code is not tracked
        """
        try:
            return self._by_code[code]
        except KeyError:
            raise UnknownInstrumentError("Instrument not in catalog", instrument=code) from None

    def find(self, code: str) -> Optional[Instrument]:
        return self._by_code.get(code)

    def by_vendor_symbol(self, vendor_symbol: str) -> Optional[Instrument]:
        return self._by_vendor.get(vendor_symbol)

    def instrument_class(self, code: str) -> InstrumentClass:
        return self.get(code).instrument_class

    @property
    def codes(self) -> List[str]:
        return list(self._by_code)

    @property
    def vendor_symbols(self) -> List[str]:
        return list(self._by_vendor)

    def tier(self, tier: InstrumentTier) -> List[Instrument]:
        return [i for i in self._by_code.values() if i.tier == tier]

    @property
    def primary(self) -> List[Instrument]:
        return self.tier(InstrumentTier.PRIMARY)

    @property
    def secondary(self) -> List[Instrument]:
        return self.tier(InstrumentTier.SECONDARY)
