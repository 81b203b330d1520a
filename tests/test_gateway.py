import ccxt.async_support as ccxt
import pytest

from engines.errors import ConfigError, ExchangeRejected, FatalStartError, TransientFetchError
from exchange.gateway import PaperOrderBook, create_gateway
from exchange.profiles import (
    EnvCredentialsProvider,
    ExchangeCredentials,
    get_profile,
)

from conftest import FakeExchange


async def _connected(engine_config, exchange=None, name="mexc"):
    gateway = create_gateway(name, ExchangeCredentials("k", "s"), engine_config,
                             exchange=exchange or FakeExchange())
    await gateway.connect()
    return gateway


async def test_place_and_poll_open_orders(engine_config):
    gateway = await _connected(engine_config)
    order = await gateway.place_limit_order("BTC/USDT", "buy", 0.01, 44775.0)
    assert order["id"] == "ex-1"

    open_orders = await gateway.fetch_open_orders("BTC/USDT")
    assert open_orders == [{"id": "ex-1", "filled": 0.0, "side": "buy",
                            "price": 44775.0, "amount": 0.01}]
    assert gateway.get_stats()["orders_placed"] == 1


async def test_has_symbol_uses_loaded_markets(engine_config):
    gateway = await _connected(engine_config)
    assert gateway.has_symbol("BTC/USDT")
    assert not gateway.has_symbol("DOGE/USDT")


@pytest.mark.parametrize("error", [
    ccxt.InsufficientFunds("balance too low"),
    ccxt.InvalidOrder("min notional"),
    ccxt.ExchangeError("rejected"),
])
async def test_placement_errors_are_rejections(engine_config, error):
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)
    exchange.fail_create = error
    with pytest.raises(ExchangeRejected):
        await gateway.place_limit_order("BTC/USDT", "sell", 0.01, 45225.0)
    assert gateway.get_stats()["errors"] == 1


async def test_network_errors_are_transient(engine_config):
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)
    exchange.fail_create = ccxt.NetworkError("connection reset")
    with pytest.raises(TransientFetchError):
        await gateway.place_limit_order("BTC/USDT", "buy", 0.01, 44775.0)

    exchange.fail_fetch = ccxt.ExchangeError("maintenance")
    with pytest.raises(TransientFetchError):
        await gateway.fetch_open_orders("BTC/USDT")


async def test_calls_are_bounded_by_timeout(engine_config):
    engine_config.request_timeout_secs = 0.05
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)
    exchange.delay = 0.5
    with pytest.raises(TransientFetchError):
        await gateway.fetch_ticker("BTC/USDT")


async def test_cancel_is_idempotent(engine_config):
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)
    order = await gateway.place_limit_order("BTC/USDT", "buy", 0.01, 44775.0)

    assert await gateway.cancel_order(order["id"], "BTC/USDT") is True
    # second cancel hits OrderNotFound, which counts as done
    assert await gateway.cancel_order(order["id"], "BTC/USDT") is True
    assert exchange.cancelled == [order["id"]]


async def test_cancel_rejection_carries_order_id(engine_config):
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)
    exchange.fail_cancel = ccxt.ExchangeError("locked")
    with pytest.raises(ExchangeRejected) as info:
        await gateway.cancel_order("ex-9", "BTC/USDT")
    assert info.value.order_id == "ex-9"


async def test_connect_failure_is_fatal(engine_config):
    exchange = FakeExchange()

    async def down():
        raise ccxt.NetworkError("dns")

    exchange.load_markets = down
    gateway = create_gateway("mexc", None, engine_config, exchange=exchange)
    with pytest.raises(FatalStartError):
        await gateway.connect()


async def test_ascendx_loads_account_group(engine_config):
    exchange = FakeExchange()
    await _connected(engine_config, exchange, name="ascendx")
    assert exchange.accounts_loaded

    other = FakeExchange()
    await _connected(engine_config, other, name="mexc")
    assert not other.accounts_loaded


async def test_paper_mode_keeps_orders_local(engine_config):
    engine_config.paper_mode = True
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)

    order = await gateway.place_limit_order("BTC/USDT", "buy", 0.02, 44775.0)
    assert order["id"].startswith("paper_")
    assert exchange.created == []

    gateway.paper.simulate_fill(order["id"], 0.005)
    (resting,) = await gateway.fetch_open_orders("BTC/USDT")
    assert resting["filled"] == pytest.approx(0.005)

    assert await gateway.cancel_order(order["id"], "BTC/USDT")
    assert await gateway.fetch_open_orders("BTC/USDT") == []
    # market data still comes from the exchange
    assert (await gateway.fetch_ticker("BTC/USDT"))["last"] == 45000.0


async def test_close_closes_client(engine_config):
    exchange = FakeExchange()
    gateway = await _connected(engine_config, exchange)
    await gateway.close()
    assert exchange.closed


def test_paper_book_full_fill_removes_order():
    book = PaperOrderBook()
    order = book.place_order("ETH/USDT", "sell", 3000.0, 1.0)
    fill = book.simulate_fill(order["id"])
    assert fill["amount"] == 1.0
    assert book.get_open_orders() == []
    assert book.simulate_fill(order["id"]) is None


# ─── Profiles / credentials ───

def test_memo_routing_per_exchange():
    creds = ExchangeCredentials("k", "s", memo="m")
    assert get_profile("bitmart").client_options(creds)["uid"] == "m"
    assert get_profile("gateio").client_options(creds)["password"] == "m"

    ascendx = get_profile("ASCENDX")
    options = ascendx.client_options(creds)
    assert ascendx.ccxt_id == "ascendex"
    assert "password" not in options and "uid" not in options
    assert options["enableRateLimit"] is True
    assert options["options"] == {"defaultType": "spot"}


def test_unknown_exchange_is_config_error():
    with pytest.raises(ConfigError):
        get_profile("binance")


def test_credentials_repr_hides_secret():
    assert "secret-value" not in repr(ExchangeCredentials("abcdef", "secret-value"))


async def test_env_credentials_provider():
    provider = EnvCredentialsProvider({
        "BITMART_API_KEY": "key",
        "BITMART_API_SECRET": "secret",
        "BITMART_API_MEMO": "memo",
        "MEXC_API_KEY": "only-key",
    })
    creds = await provider.get_credentials("u1", "bitmart")
    assert (creds.api_key, creds.secret, creds.memo) == ("key", "secret", "memo")
    assert await provider.get_credentials("u1", "mexc") is None
    assert await provider.get_credentials("u1", "gateio") is None
