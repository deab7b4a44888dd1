"""
Feed message parsing.

Normalizes inbound real-time feed envelopes into typed messages:
1. Required fields are present
2. Types are correct
3. Prices are positive and timestamps usable

The envelope kind is taken from ``type`` or, for newer clients, ``action``.
A trade envelope may carry a batch of trades under ``data``
(``{"type": "trade", "data": [{"p": .., "s": .., "t": .., "v": ..}]}``) or a
single flat trade.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..core.exceptions import MessageValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeMessage:
    """One trade print from the feed."""
    price: float
    vendor_symbol: str
    timestamp_ms: int
    volume: float = 0.0


@dataclass(frozen=True)
class PingMessage:
    """Keep-alive; answered with a pong."""


@dataclass(frozen=True)
class ErrorMessage:
    message: str


FeedMessage = Union[TradeMessage, PingMessage, ErrorMessage]

MAX_SYMBOL_LENGTH = 64


def _decode(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageValidationError("Feed message is not valid JSON", error=str(e))
    if not isinstance(data, dict):
        raise MessageValidationError(
            "Feed message must be a JSON object",
            received=type(data).__name__
        )
    return data


def _number(trade: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        if key in trade and trade[key] is not None:
            value = trade[key]
            if isinstance(value, bool):
                raise MessageValidationError("Numeric field is a boolean", field=key)
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise MessageValidationError(
                    f"Invalid {key} value: {value!r}",
                    field=key
                ) from None
            if not math.isfinite(number):
                raise MessageValidationError(f"Non-finite {key} value", field=key)
            return number
    return None


def parse_trade(trade: Dict[str, Any]) -> TradeMessage:
    """
    Validate one trade mapping (short ``p/s/t/v`` or long field names).

    Raises:
        MessageValidationError: if a required field is missing or invalid
    """
    if not isinstance(trade, dict):
        raise MessageValidationError("Trade must be an object", received=type(trade).__name__)

    symbol = trade.get("s", trade.get("symbol"))
    if not isinstance(symbol, str) or not symbol:
        raise MessageValidationError("Trade missing symbol", received_fields=sorted(trade))
    if len(symbol) > MAX_SYMBOL_LENGTH:
        raise MessageValidationError("Trade symbol too long", length=len(symbol))

    price = _number(trade, "p", "price")
    if price is None:
        raise MessageValidationError("Trade missing price", symbol=symbol)
    if price <= 0:
        raise MessageValidationError(f"Trade price must be positive: {price}", symbol=symbol)

    timestamp = _number(trade, "t", "timestamp")
    if timestamp is None or timestamp < 0:
        raise MessageValidationError("Trade missing timestamp", symbol=symbol)

    volume = _number(trade, "v", "volume") or 0.0

    return TradeMessage(
        price=price,
        vendor_symbol=symbol,
        timestamp_ms=int(timestamp),
        volume=max(0.0, volume),
    )


def parse_message(raw: Union[str, bytes, Dict[str, Any]]) -> List[FeedMessage]:
    """
    Parse one feed envelope.

    Returns:
        The messages it carries; a batched trade envelope yields one
        TradeMessage per trade

    Raises:
        MessageValidationError: on malformed JSON, an unknown kind or an
            invalid trade
    """
    data = _decode(raw)
    kind = data.get("type") or data.get("action")

    if kind == "ping":
        return [PingMessage()]

    if kind == "error":
        return [ErrorMessage(message=str(data.get("msg") or data.get("message") or "unknown error"))]

    if kind == "trade":
        batch = data.get("data")
        if batch is None:
            return [parse_trade(data)]
        if not isinstance(batch, list):
            raise MessageValidationError("Trade data must be a list", received=type(batch).__name__)
        messages = [parse_trade(t) for t in batch]
        logger.debug("Trade envelope parsed: %d trades", len(messages))
        return messages

    raise MessageValidationError(
        f"Unknown feed message type: {kind!r}",
        received_fields=sorted(data)
    )
