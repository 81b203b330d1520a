import asyncio

import ccxt.async_support as ccxt
import pytest

from config import EngineConfig
from engines.models import ReferenceSource, Session, SessionConfig, StrategyKind
from engines.market_maker import MarketMakingEngine
from engines.session_manager import SessionManager
from exchange.gateway import create_gateway
from exchange.profiles import ExchangeCredentials
from feeds.price_oracle import PriceOracle
from storage.session_store import SessionStore


class FakeExchange:
    """Stands in for a ccxt async client: markets, ticker and an order book."""

    def __init__(self, symbols=("BTC/USDT",), bid=44990.0, ask=45010.0, last=45000.0):
        self._symbols = symbols
        self.markets = {}
        self.ticker = {"bid": bid, "ask": ask, "last": last}
        self.orders = {}
        self.created = []
        self.cancelled = []
        self.fail_create = None
        self.fail_cancel = None
        self.fail_fetch = None
        self.delay = 0.0
        self.accounts_loaded = False
        self.closed = False
        self._next_id = 0

    async def load_markets(self):
        self.markets = {s: {"symbol": s} for s in self._symbols}
        return self.markets

    async def load_accounts(self):
        self.accounts_loaded = True
        return []

    async def fetch_ticker(self, symbol):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_fetch:
            raise self.fail_fetch
        return dict(self.ticker, symbol=symbol)

    async def create_order(self, symbol, type, side, amount, price):
        if self.fail_create:
            raise self.fail_create
        self._next_id += 1
        order = {
            "id": f"ex-{self._next_id}",
            "symbol": symbol,
            "type": type,
            "side": side,
            "amount": amount,
            "price": price,
            "filled": 0.0,
            "status": "open",
        }
        self.orders[order["id"]] = order
        self.created.append(order)
        return dict(order)

    async def cancel_order(self, order_id, symbol=None):
        if self.fail_cancel:
            raise self.fail_cancel
        if order_id not in self.orders:
            raise ccxt.OrderNotFound(f"order {order_id} not found")
        self.cancelled.append(order_id)
        return self.orders.pop(order_id)

    async def fetch_open_orders(self, symbol=None):
        if self.fail_fetch:
            raise self.fail_fetch
        return [dict(o) for o in self.orders.values() if symbol is None or o["symbol"] == symbol]

    async def close(self):
        self.closed = True

    # ── test helpers ──

    def fill(self, order_id, amount=None):
        order = self.orders[order_id]
        if amount is None or order["filled"] + amount >= order["amount"]:
            del self.orders[order_id]
        else:
            order["filled"] += amount

    def open_orders(self, side=None):
        return [o for o in self.orders.values() if side is None or o["side"] == side]


class FakeOracle:
    """Reference price without HTTP. price=None means the feed has nothing."""

    def __init__(self, price=45000.0):
        self.price = price
        self.calls = 0
        self.seeded = None

    @property
    def last_price(self):
        return self.price

    def seed(self, price):
        self.seeded = price

    async def get_reference_price(self):
        self.calls += 1
        return self.price

    async def close(self):
        pass

    def get_stats(self):
        return {"source": "EXTERNAL", "last_price": self.price, "calls": self.calls}


class StaticCredentials:
    def __init__(self, credentials=ExchangeCredentials("key", "secret")):
        self.credentials = credentials
        self.requests = []

    async def get_credentials(self, user_id, exchange):
        self.requests.append((user_id, exchange))
        return self.credentials


@pytest.fixture
def engine_config():
    # Loops effectively idle unless a test shortens them; tests drive ticks directly.
    return EngineConfig(
        paper_mode=False,
        fill_check_secs=60.0,
        cluster_refresh_secs=600.0,
        replacement_delay_secs=0.3,
        leg_pause_secs=0.0,
        ladder_pause_secs=0.0,
        request_timeout_secs=1.0,
        max_requests_per_second=1000.0,
        shutdown_grace_secs=2.0,
        stats_interval_secs=600.0,
    )


@pytest.fixture
def fake_exchange():
    return FakeExchange()


@pytest.fixture
async def store(tmp_path):
    s = SessionStore(str(tmp_path / "mmdesk.db"))
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def gateway_factory(fake_exchange):
    made = []

    def factory(exchange_id, credentials, config):
        gateway = create_gateway(exchange_id, credentials, config, exchange=fake_exchange)
        made.append(gateway)
        return gateway

    factory.made = made
    return factory


@pytest.fixture
def external_oracle():
    return FakeOracle(45000.0)


@pytest.fixture
def oracle_factory(external_oracle):
    def factory(session, gateway):
        if session.config.reference_source is ReferenceSource.EXTERNAL:
            return external_oracle
        return PriceOracle(session.config.reference_source, session.config.symbol, gateway=gateway)
    return factory


def make_session(session_id="a1b2c3d4e5f60718", user_id="user-1", **overrides):
    fields = dict(exchange="mexc", symbol="BTC/USDT", spread_pct=0.5, total_amount=1000.0)
    fields.update(overrides)
    return Session(session_id=session_id, user_id=user_id, config=SessionConfig(**fields))


def ladder_session(**overrides):
    fields = dict(strategy=StrategyKind.LADDER, order_count=4, base_order_size=0.001,
                  spread_pct=1.0, refresh_interval_secs=600.0, price_move_threshold_pct=0.5)
    fields.update(overrides)
    return make_session(**fields)


@pytest.fixture
async def make_engine(store, gateway_factory, engine_config, oracle_factory):
    engines = []

    async def build(session=None, persist=True):
        session = session or make_session()
        if persist:
            await store.create_session(session)
        engine = MarketMakingEngine(session, store, gateway_factory, engine_config,
                                    oracle_factory=oracle_factory)
        engines.append(engine)
        return engine

    yield build
    for engine in engines:
        await engine.abort()


@pytest.fixture
async def manager(store, gateway_factory, engine_config, oracle_factory):
    m = SessionManager(store, gateway_factory, StaticCredentials(), engine_config,
                       oracle_factory=oracle_factory)
    yield m
    await m.shutdown(grace_secs=1.0)
