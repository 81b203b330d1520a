"""
MMDesk — Order Gateway
=======================
Wraps ccxt's async spot clients behind the handful of calls the session
engine needs.

Features:
  - Limit order placement and cancellation
  - Open-order polling normalized to {"id", "filled", "side", "price", "amount"}
  - Ticker fetch for exchange-sourced reference prices
  - Paper mode: orders kept in a local book, market data stays live
  - Rate limiting and bounded timeouts on every call
  - ccxt errors translated into the engine's error taxonomy

Usage:
  gateway = create_gateway("mexc", credentials, engine_config)
  await gateway.connect()
  order = await gateway.place_limit_order("BTC/USDT", "buy", 0.001, 44775.0)
  await gateway.cancel_order(order["id"], "BTC/USDT")
"""

import asyncio
import time
import logging
from typing import Callable, Dict, List, Optional

import ccxt.async_support as ccxt

from engines.errors import ExchangeRejected, FatalStartError, TransientFetchError
from .profiles import ExchangeCredentials, ExchangeProfile, get_profile

logger = logging.getLogger("mmdesk.gateway")


# ─────────────────────────────────────────────
# Rate Limiter
# ─────────────────────────────────────────────

class RateLimiter:
    """Simple token bucket rate limiter."""

    def __init__(self, rate: float):
        self.rate = rate
        self.tokens = rate
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_refill
            self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
            self.last_refill = now

            if self.tokens < 1:
                wait = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait)
                self.tokens = 0
            else:
                self.tokens -= 1


# ─────────────────────────────────────────────
# Paper Order Simulator
# ─────────────────────────────────────────────

class PaperOrderBook:
    """Resting orders for paper sessions. Fills only happen via simulate_fill."""

    def __init__(self):
        self._orders: Dict[str, Dict] = {}
        self._order_counter = 0

    def place_order(self, symbol: str, side: str, price: float, amount: float) -> Dict:
        self._order_counter += 1
        order_id = f"paper_{self._order_counter}_{int(time.time()*1000)}"

        order = {
            "id": order_id,
            "symbol": symbol,
            "side": side,
            "price": price,
            "amount": amount,
            "filled": 0.0,
            "remaining": amount,
            "status": "open",
            "timestamp": int(time.time() * 1000),
        }
        self._orders[order_id] = order
        return dict(order)

    def cancel_order(self, order_id: str) -> bool:
        return self._orders.pop(order_id, None) is not None

    def get_open_orders(self, symbol: str = None) -> List[Dict]:
        orders = list(self._orders.values())
        if symbol:
            orders = [o for o in orders if o["symbol"] == symbol]
        return [dict(o) for o in orders]

    def simulate_fill(self, order_id: str, amount: float = None) -> Optional[Dict]:
        """Fill an order fully, or partially when amount < remaining."""
        order = self._orders.get(order_id)
        if order is None:
            return None

        qty = order["remaining"] if amount is None else min(amount, order["remaining"])
        order["filled"] += qty
        order["remaining"] -= qty
        fill = {
            "order_id": order_id,
            "symbol": order["symbol"],
            "side": order["side"],
            "price": order["price"],
            "amount": qty,
            "time": time.time(),
        }
        if order["remaining"] <= 0:
            order["status"] = "closed"
            del self._orders[order_id]
        return fill


# ─────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────

class ExchangeGateway:
    """
    One authenticated ccxt client per session.

    In paper mode: orders are simulated locally, tickers and markets still
    come from the public endpoints.
    In live mode: orders go to the exchange with the session's credentials.
    """

    def __init__(self, profile: ExchangeProfile, credentials: Optional[ExchangeCredentials],
                 config, exchange=None):
        self.profile = profile
        self.credentials = credentials
        self.config = config
        self.paper_mode = config.paper_mode

        # ccxt client (injected in tests)
        self._exchange = exchange

        # Paper mode
        self._paper = PaperOrderBook()

        # Rate limiter
        self._limiter = RateLimiter(config.max_requests_per_second)

        # Stats
        self._request_count = 0
        self._error_count = 0
        self._orders_placed = 0
        self._orders_cancelled = 0

    @property
    def paper(self) -> PaperOrderBook:
        return self._paper

    # ── Connection ──

    async def connect(self):
        """Build the ccxt client, load markets and run post-connect steps."""
        if self._exchange is None:
            exchange_class = getattr(ccxt, self.profile.ccxt_id, None)
            if exchange_class is None:
                raise FatalStartError(f"ccxt does not support {self.profile.ccxt_id}")
            creds = None if self.paper_mode else self.credentials
            self._exchange = exchange_class(self.profile.client_options(creds))

        try:
            await self._call("load_markets", self._exchange.load_markets, fetch=True)
            if self.profile.load_accounts and not self.paper_mode:
                # ascendex needs its account group before any private call
                await self._call("load_accounts", self._exchange.load_accounts, fetch=True)
        except (TransientFetchError, ExchangeRejected) as e:
            raise FatalStartError(f"{self.profile.name} connect failed: {e}") from e

        mode = "PAPER" if self.paper_mode else "LIVE"
        logger.info(f"{self.profile.name} gateway connected ({mode}) — "
                    f"{len(self._exchange.markets or {})} markets")

    async def close(self):
        """Close the ccxt session."""
        if self._exchange is not None:
            try:
                await self._exchange.close()
            except Exception as e:
                logger.debug(f"{self.profile.name} close error: {e}")
        logger.info(f"{self.profile.name} gateway closed")

    def has_symbol(self, symbol: str) -> bool:
        markets = getattr(self._exchange, "markets", None) or {}
        return symbol in markets

    # ── Market Data ──

    async def fetch_ticker(self, symbol: str) -> Dict:
        return await self._call("fetch_ticker", self._exchange.fetch_ticker, symbol, fetch=True)

    async def fetch_open_orders(self, symbol: str = None) -> List[Dict]:
        """Open orders, normalized. Raises TransientFetchError on failure."""
        if self.paper_mode:
            raw = self._paper.get_open_orders(symbol)
        else:
            raw = await self._call("fetch_open_orders", self._exchange.fetch_open_orders,
                                   symbol, fetch=True)
        return [self._normalize(o) for o in raw or []]

    # ── Order Management ──

    async def place_limit_order(self, symbol: str, side: str, quantity: float,
                                price: float) -> Dict:
        """Place a limit order. Returns {"id", "status", ...}."""
        if self.paper_mode:
            order = self._paper.place_order(symbol, side, price, quantity)
        else:
            order = await self._call("create_order", self._exchange.create_order,
                                     symbol, "limit", side, quantity, price)
        if not order or not order.get("id"):
            raise ExchangeRejected(f"{side} {quantity}@{price} returned no order id")

        self._orders_placed += 1
        logger.debug(f"Placed {side} {quantity} {symbol} @ {price} → {order['id']}")
        return order

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel by id. An order the exchange no longer knows counts as cancelled."""
        if self.paper_mode:
            self._paper.cancel_order(order_id)
            self._orders_cancelled += 1
            return True

        try:
            await self._call("cancel_order", self._exchange.cancel_order, order_id, symbol)
        except ExchangeRejected as e:
            if isinstance(e.__cause__, ccxt.OrderNotFound):
                logger.debug(f"Cancel {order_id}: already gone")
                return True
            raise
        self._orders_cancelled += 1
        return True

    # ── Internals ──

    async def _call(self, label: str, method: Callable, *args, fetch: bool = False):
        """Rate-limit, bound and translate one ccxt call.

        Exchange errors on fetches are transient (retry next tick); on order
        calls they are rejections.
        """
        await self._limiter.acquire()
        self._request_count += 1

        try:
            return await asyncio.wait_for(method(*args), timeout=self.config.request_timeout_secs)
        except asyncio.TimeoutError as e:
            self._error_count += 1
            raise TransientFetchError(
                f"{label} timed out after {self.config.request_timeout_secs}s") from e
        except ccxt.NetworkError as e:
            self._error_count += 1
            raise TransientFetchError(f"{label} network error: {e}") from e
        except ccxt.BaseError as e:
            self._error_count += 1
            if fetch:
                raise TransientFetchError(f"{label} failed: {e}") from e
            order_id = args[0] if label == "cancel_order" else None
            raise ExchangeRejected(f"{label} rejected: {e}", order_id=order_id) from e

    @staticmethod
    def _normalize(order: Dict) -> Dict:
        return {
            "id": str(order.get("id")),
            "filled": float(order.get("filled") or 0),
            "side": order.get("side"),
            "price": float(order.get("price") or 0),
            "amount": float(order.get("amount") or 0),
        }

    # ── Stats ──

    def get_stats(self) -> Dict:
        return {
            "exchange": self.profile.name,
            "mode": "PAPER" if self.paper_mode else "LIVE",
            "requests": self._request_count,
            "errors": self._error_count,
            "orders_placed": self._orders_placed,
            "orders_cancelled": self._orders_cancelled,
            "paper_open_orders": len(self._paper.get_open_orders()) if self.paper_mode else None,
        }


def create_gateway(exchange_id: str, credentials: Optional[ExchangeCredentials], config,
                   exchange=None) -> ExchangeGateway:
    """Build a gateway from the exchange's capability descriptor."""
    return ExchangeGateway(get_profile(exchange_id), credentials, config, exchange=exchange)
