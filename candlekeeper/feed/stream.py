"""
Real-time trade feed over an aiohttp websocket.

Features:
- Subscribes every tracked instrument on connect (and on every reconnect)
- Answers pings with pongs
- Ignores symbols that are not in the catalog
- Reconnects with exponential backoff, min(base * 2^n, max), up to a limit
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from ..core.config import FeedConfig
from ..core.exceptions import MessageValidationError
from ..core.types import Instrument
from ..markets.catalog import SymbolCatalog
from ..monitoring.logger import get_logger
from .messages import ErrorMessage, PingMessage, TradeMessage, parse_message


TradeCallback = Callable[[Instrument, TradeMessage], Awaitable[Any]]


class FeedClient:
    """Streams trades from the vendor websocket into a callback."""

    def __init__(
        self,
        config: FeedConfig,
        catalog: SymbolCatalog,
        on_trade: TradeCallback,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config
        self.catalog = catalog
        self.on_trade = on_trade
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

        self._ws = None
        self._connected = False
        self.reconnect_attempts = 0
        self.last_message_at: Optional[datetime] = None

        self.stats: Dict[str, int] = {
            'messages': 0,
            'trades': 0,
            'ignored': 0,
            'invalid': 0,
            'errors': 0,
            'reconnects': 0,
            'callback_errors': 0,
        }
        self.logger = get_logger(__name__)

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def url(self) -> str:
        if self.config.api_key:
            return f"{self.config.url}?token={self.config.api_key}"
        return self.config.url

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        delay = self.config.reconnect_base_delay * (2 ** max(0, attempt - 1))
        return min(delay, self.config.reconnect_max_delay)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def subscribe_all(self, ws) -> int:
        for symbol in self.catalog.vendor_symbols:
            await ws.send_json({"type": "subscribe", "symbol": symbol})
        self.logger.info("Subscribed to feed", symbols=len(self.catalog.vendor_symbols))
        return len(self.catalog.vendor_symbols)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Connect, stream and reconnect until stopped or out of attempts.

        A connection that delivered messages resets the attempt counter.
        """
        stop_event = stop_event or asyncio.Event()

        while not stop_event.is_set():
            try:
                await self._stream(stop_event)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self.logger.warning("Feed connection error", error=str(e))
            finally:
                self._connected = False

            if stop_event.is_set():
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.config.max_reconnect_attempts:
                self.logger.critical(
                    "Max reconnection attempts reached, feed stopped",
                    attempts=self.config.max_reconnect_attempts
                )
                return

            delay = self.backoff_delay(self.reconnect_attempts)
            self.stats['reconnects'] += 1
            self.logger.info(
                "Reconnecting feed",
                delay=delay,
                attempt=self.reconnect_attempts
            )
            await self._sleep(delay)

    async def _stream(self, stop_event: asyncio.Event) -> None:
        session = await self._get_session()
        ws = await session.ws_connect(self.url, heartbeat=30)
        self._ws = ws
        # A quiet socket never yields a frame, so a stop has to close it
        closer = asyncio.ensure_future(self._close_on_stop(ws, stop_event))
        try:
            self._connected = True
            self.logger.info("Feed connected", url=self.config.url)
            await self.subscribe_all(ws)

            async for msg in ws:
                if stop_event.is_set():
                    break
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self.reconnect_attempts = 0
                    await self.handle_raw(msg.data, ws)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.logger.error("Feed websocket error", error=str(ws.exception()))
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            closer.cancel()
            self._ws = None
            await ws.close()
            self.logger.info("Feed disconnected")

    async def _close_on_stop(self, ws, stop_event: asyncio.Event) -> None:
        await stop_event.wait()
        self.logger.info("Stop requested, closing feed")
        await ws.close()

    async def handle_raw(self, raw: Any, ws) -> int:
        """
        Process one inbound frame.

        Returns:
            Number of trades handed to the callback
        """
        self.stats['messages'] += 1
        self.last_message_at = datetime.now(timezone.utc)

        try:
            messages = parse_message(raw)
        except MessageValidationError as e:
            self.stats['invalid'] += 1
            self.logger.warning("Invalid feed message dropped", error=str(e))
            return 0

        delivered = 0
        for message in messages:
            if isinstance(message, PingMessage):
                await ws.send_json({"type": "pong"})
            elif isinstance(message, ErrorMessage):
                self.stats['errors'] += 1
                self.logger.error("Feed reported an error", message=message.message)
            elif isinstance(message, TradeMessage):
                if await self._deliver(message):
                    delivered += 1
        return delivered

    async def _deliver(self, trade: TradeMessage) -> bool:
        instrument = self.catalog.by_vendor_symbol(trade.vendor_symbol)
        if instrument is None:
            self.stats['ignored'] += 1
            return False

        self.stats['trades'] += 1
        try:
            await self.on_trade(instrument, trade)
        except Exception as e:
            self.stats['callback_errors'] += 1
            self.logger.error(
                "Trade callback error",
                instrument=instrument.code,
                error=str(e),
                exc_info=True
            )
            return False
        return True

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._connected = False

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'connected': self._connected,
            'reconnect_attempts': self.reconnect_attempts,
            'last_message_at': self.last_message_at.isoformat() if self.last_message_at else None,
        }
