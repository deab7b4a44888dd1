"""Real-time feed client and message parsing."""

from .messages import ErrorMessage, PingMessage, TradeMessage, parse_message
from .stream import FeedClient

__all__ = [
    "ErrorMessage",
    "PingMessage",
    "TradeMessage",
    "parse_message",
    "FeedClient",
]
