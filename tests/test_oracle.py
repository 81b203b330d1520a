import ccxt.async_support as ccxt
import pytest
from aiohttp import web
from aiohttp import test_utils

from engines.errors import TransientFetchError
from engines.models import ReferenceSource
from exchange.gateway import create_gateway
from feeds.price_oracle import PriceOracle, parse_external_price, ticker_mid

from conftest import FakeExchange


def test_parse_external_price():
    assert parse_external_price({"pair": {"priceUsd": "0.01234"}}) == 0.01234


@pytest.mark.parametrize("payload", [
    {},
    {"pair": None},
    {"pair": {"priceNative": "1"}},
    {"pair": {"priceUsd": "n/a"}},
    {"pair": {"priceUsd": "0"}},
])
def test_parse_external_price_rejects_schema_drift(payload):
    with pytest.raises(TransientFetchError):
        parse_external_price(payload)


def test_ticker_mid_prefers_bid_ask():
    assert ticker_mid({"bid": 99.0, "ask": 101.0, "last": 150.0}) == 100.0
    assert ticker_mid({"bid": None, "ask": 101.0, "last": 150.0}) == 150.0
    assert ticker_mid({}) is None


async def _exchange_oracle(engine_config, exchange):
    gateway = create_gateway("mexc", None, engine_config, exchange=exchange)
    await gateway.connect()
    return PriceOracle(ReferenceSource.EXCHANGE, "BTC/USDT", gateway=gateway)


async def test_exchange_source_uses_mid(engine_config):
    oracle = await _exchange_oracle(engine_config, FakeExchange(bid=44990.0, ask=45010.0))
    assert await oracle.get_reference_price() == 45000.0
    assert oracle.last_price == 45000.0


async def test_failure_falls_back_to_last_known(engine_config):
    exchange = FakeExchange()
    oracle = await _exchange_oracle(engine_config, exchange)
    assert await oracle.get_reference_price() == 45000.0

    exchange.fail_fetch = ccxt.NetworkError("timeout")
    assert await oracle.get_reference_price() == 45000.0
    assert oracle.get_stats()["errors"] == 1


async def test_no_price_ever_is_none(engine_config):
    exchange = FakeExchange(bid=None, ask=None, last=None)
    oracle = await _exchange_oracle(engine_config, exchange)
    assert await oracle.get_reference_price() is None


async def test_seed_restores_cache(engine_config):
    exchange = FakeExchange(bid=None, ask=None, last=None)
    oracle = await _exchange_oracle(engine_config, exchange)
    oracle.seed(43000.0)
    assert await oracle.get_reference_price() == 43000.0


@pytest.fixture
async def price_server():
    state = {"status": 200, "payload": {"pair": {"priceUsd": "0.0421"}}}

    async def handler(request):
        return web.json_response(state["payload"], status=state["status"])

    app = web.Application()
    app.router.add_get("/latest/dex/pairs/bsc/pair", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.state = state
    yield server
    await server.close()


async def test_external_feed(price_server):
    oracle = PriceOracle(ReferenceSource.EXTERNAL, "LAND/USDT",
                         url=str(price_server.make_url("/latest/dex/pairs/bsc/pair")),
                         timeout_secs=2)
    try:
        assert await oracle.get_reference_price() == 0.0421

        price_server.state["status"] = 503
        assert await oracle.get_reference_price() == 0.0421

        price_server.state.update(status=200, payload={"pairs": []})
        assert await oracle.get_reference_price() == 0.0421
        assert oracle.get_stats()["errors"] == 2
    finally:
        await oracle.close()


async def test_external_feed_html_body_keeps_last_price():
    async def handler(request):
        return web.Response(text="<html>gateway error</html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/pair", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    oracle = PriceOracle(ReferenceSource.EXTERNAL, "LAND/USDT",
                         url=str(server.make_url("/pair")), timeout_secs=2)
    oracle.seed(0.05)
    try:
        assert await oracle.get_reference_price() == 0.05
        assert oracle.get_stats()["errors"] == 1
    finally:
        await oracle.close()
        await server.close()
