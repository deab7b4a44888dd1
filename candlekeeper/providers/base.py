"""Abstract base class and shared plumbing for historical OHLCV vendors."""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from ..core.constants import Resolution
from ..core.exceptions import ProviderError, RateLimitError, TransientProviderError
from ..core.types import Instrument
from ..monitoring.logger import get_logger


class RateLimiter:
    """
    Enforces a minimum interval between requests to one vendor.

    Requests are paced, never dropped. The slot is reserved under a lock and
    the wait happens outside it, so a sleeping caller only delays itself.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Wait for the next free slot.

        Returns:
            Seconds waited
        """
        async with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
            wait = slot - now

        if wait > 0:
            await self._sleep(wait)
        return wait


class HistoricalProvider(ABC):
    """Base class every historical vendor must implement.

    Implementations return raw rows; mapping to Candle, validation, retry
    and merging are the BackfillProvider's job.
    """

    #: Vendor name used in logs, stats and instrument symbol maps.
    name: str = ""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.rate_limiter = rate_limiter or RateLimiter(0.0)

    @abstractmethod
    def supports(self, instrument: Instrument, resolution: Optional[Resolution] = None) -> bool:
        """Return True if this vendor can serve ``instrument`` (at ``resolution``)."""

    @abstractmethod
    async def fetch_chunk(
        self,
        instrument: Instrument,
        resolution: Resolution,
        start: datetime,
        end: datetime
    ) -> List[Dict[str, Any]]:
        """Fetch raw bars in [start, end).

        Returns:
            Rows with ``timestamp`` (datetime or epoch ms), ``open``, ``high``,
            ``low``, ``close`` and optional ``volume``. An empty list is a
            valid answer.

        Raises:
            RateLimitError: on an explicit rate-limit response
            TransientProviderError: on recoverable network failures
            ProviderError: on any other vendor failure
        """

    async def close(self) -> None:
        pass


class HTTPProvider(HistoricalProvider):
    """Vendor reached over HTTP with a shared aiohttp session."""

    base_url: str = ""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 30.0
    ):
        super().__init__(rate_limiter)
        self.api_key = api_key
        if base_url:
            self.base_url = base_url
        self._session = session
        self._owns_session = session is None
        self.request_timeout = request_timeout
        self.logger = get_logger(f"{__name__}.{self.name}")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        """GET ``path`` after pacing, translating failures into provider errors."""
        await self.rate_limiter.acquire()
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.get(url, params=params) as resp:
                if resp.status == 429:
                    raise RateLimitError(f"{self.name} rate limited", provider=self.name, status=429)
                if resp.status >= 500:
                    raise TransientProviderError(
                        f"{self.name} server error", provider=self.name, status=resp.status
                    )
                if resp.status != 200:
                    text = await resp.text()
                    raise ProviderError(
                        f"{self.name} request failed",
                        provider=self.name, status=resp.status, body=text[:200]
                    )
                return await resp.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise TransientProviderError(
                f"{self.name} connection error", provider=self.name, error=str(e)
            ) from e
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"{self.name} request timed out", provider=self.name) from e
        except aiohttp.ContentTypeError as e:
            raise ProviderError(f"{self.name} returned invalid JSON", provider=self.name) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
