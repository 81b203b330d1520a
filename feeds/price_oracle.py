"""
MMDesk — Reference Price Oracle
================================
Where a session's mid price comes from.

  EXCHANGE — the session's own venue: (bid + ask) / 2, ticker `last` if a side is missing
  EXTERNAL — one HTTP GET to a DEX pair feed, price at pair.priceUsd

Fetch failures never raise to the engine: the last known price is returned,
or None if there has never been one.

Usage:
  oracle = PriceOracle(ReferenceSource.EXCHANGE, "BTC/USDT", gateway=gateway)
  mid = await oracle.get_reference_price()
"""

import asyncio
import aiohttp
import logging
import time
from typing import Dict, Optional

from engines.errors import TransientFetchError
from engines.models import ReferenceSource

logger = logging.getLogger("mmdesk.feeds.price")


def parse_external_price(payload: Dict) -> float:
    """Extract pair.priceUsd from a DexScreener-style response."""
    try:
        price = float(payload["pair"]["priceUsd"])
    except (KeyError, TypeError, ValueError) as e:
        raise TransientFetchError(f"Unexpected price payload: {e!r}") from e
    if price <= 0:
        raise TransientFetchError(f"Non-positive external price {price}")
    return price


def ticker_mid(ticker: Dict) -> Optional[float]:
    bid = ticker.get("bid")
    ask = ticker.get("ask")
    if bid and ask:
        return (float(bid) + float(ask)) / 2
    last = ticker.get("last")
    return float(last) if last else None


class PriceOracle:
    """Reference price for one session, with a last-known fallback."""

    def __init__(self, source: ReferenceSource, symbol: str, gateway=None,
                 http_session: aiohttp.ClientSession = None, url: str = "",
                 timeout_secs: float = 10.0):
        self.source = source
        self.symbol = symbol
        self.url = url
        self.timeout_secs = timeout_secs
        self._gateway = gateway
        self._session = http_session
        self._owns_session = http_session is None

        self._last_price: Optional[float] = None
        self._last_update: float = 0.0
        self._error_count = 0

    @property
    def last_price(self) -> Optional[float]:
        return self._last_price

    def seed(self, price: Optional[float]):
        """Restore the cached price (used when resuming a session)."""
        if price and price > 0:
            self._last_price = price

    async def get_reference_price(self) -> Optional[float]:
        try:
            if self.source is ReferenceSource.EXTERNAL:
                price = await self._fetch_external()
            else:
                price = await self._fetch_exchange()
            if price is None or price <= 0:
                raise TransientFetchError(f"No usable price for {self.symbol}")
        except (TransientFetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._error_count += 1
            logger.warning(f"{self.source.value} price for {self.symbol} unavailable: {e} "
                           f"(using last known {self._last_price})")
            return self._last_price

        self._last_price = price
        self._last_update = time.time()
        return price

    async def _fetch_exchange(self) -> Optional[float]:
        ticker = await self._gateway.fetch_ticker(self.symbol)
        return ticker_mid(ticker or {})

    async def _fetch_external(self) -> float:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        async with self._session.get(
            self.url,
            timeout=aiohttp.ClientTimeout(total=self.timeout_secs),
        ) as resp:
            if resp.status != 200:
                raise TransientFetchError(f"External feed status {resp.status}")
            try:
                data = await resp.json(content_type=None)
            except ValueError as e:
                raise TransientFetchError(f"External feed returned non-JSON body: {e}") from e
        return parse_external_price(data)

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def get_stats(self) -> Dict:
        return {
            "source": self.source.value,
            "last_price": self._last_price,
            "last_update": self._last_update,
            "errors": self._error_count,
        }
