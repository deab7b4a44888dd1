"""Market calendar and symbol catalog."""

from .calendar import MarketCalendar, MarketStatus
from .catalog import SymbolCatalog

__all__ = [
    "MarketCalendar",
    "MarketStatus",
    "SymbolCatalog",
]
