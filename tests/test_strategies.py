import pytest

from config import EngineConfig
from engines.models import LiveOrder, OrderSide, OrderStatus, ReferenceSource, round_amount
from engines.strategies import ClusterStrategy, LadderStrategy, build_strategy, detect_fills

from conftest import ladder_session, make_session


def test_cluster_prices_around_mid():
    strategy = ClusterStrategy(make_session(spread_pct=0.5, total_amount=1000), EngineConfig())
    buy, sell = strategy.compute_order_set(45000.0)

    assert buy.side is OrderSide.BUY and sell.side is OrderSide.SELL
    assert buy.price == 44775.0
    assert sell.price == 45225.0
    # capital split 50/50 by notional
    assert buy.quantity == round_amount(500 / 44775.0)
    assert sell.quantity == round_amount(500 / 45225.0)
    assert buy.price * buy.quantity == pytest.approx(500, abs=1e-3)
    assert sell.price * sell.quantity == pytest.approx(500, abs=1e-3)


@pytest.mark.parametrize("mid,spread", [(0.0123, 2.0), (1.75, 0.3), (64250.5, 0.1)])
def test_cluster_is_symmetric(mid, spread):
    strategy = ClusterStrategy(make_session(spread_pct=spread), EngineConfig())
    buy, sell = strategy.compute_order_set(mid)
    s = spread / 100

    assert sell.price - buy.price == pytest.approx(2 * s * mid, abs=2e-8)
    assert (buy.price + sell.price) / 2 == pytest.approx(mid, abs=1e-8)


def test_ladder_geometry():
    strategy = LadderStrategy(ladder_session(), EngineConfig())
    intents = strategy.compute_order_set(100.0)

    buys = [(i.price, i.quantity, i.level) for i in intents if i.side is OrderSide.BUY]
    sells = [(i.price, i.quantity, i.level) for i in intents if i.side is OrderSide.SELL]
    assert buys == [(99.5, 0.0015, 1), (99.0, 0.002, 2)]
    assert sells == [(100.5, 0.0015, 1), (101.0, 0.002, 2)]


def test_ladder_sizes_increase_with_level():
    strategy = LadderStrategy(ladder_session(order_count=10, base_order_size=0.01), EngineConfig())
    intents = strategy.compute_order_set(2500.0)
    for side in (OrderSide.BUY, OrderSide.SELL):
        sizes = [i.quantity for i in sorted(intents, key=lambda i: i.level) if i.side is side]
        assert len(sizes) == 5
        assert all(a < b for a, b in zip(sizes, sizes[1:]))


def test_ladder_odd_count_uses_floor():
    strategy = LadderStrategy(ladder_session(order_count=5), EngineConfig())
    assert len(strategy.compute_order_set(100.0)) == 4


def test_build_strategy_picks_by_kind():
    assert isinstance(build_strategy(make_session(), EngineConfig()), ClusterStrategy)
    assert isinstance(build_strategy(ladder_session(), EngineConfig()), LadderStrategy)


def test_cluster_policy_follows_reference_source():
    cfg = EngineConfig(cluster_refresh_secs=120)
    exchange = ClusterStrategy(make_session(), cfg)
    external = ClusterStrategy(make_session(reference_source=ReferenceSource.EXTERNAL), cfg)
    assert exchange.immediate and exchange.refresh_interval == 120
    assert not external.immediate and external.refresh_interval is None


# ─── detect_fills ───

def _leg(order_id, side=OrderSide.BUY, qty=1.0):
    return LiveOrder(order_id=order_id, side=side, price=100.0, quantity=qty)


def test_absent_order_is_filled():
    leg = _leg("1")
    fills = detect_fills([leg], [])
    assert len(fills) == 1
    assert fills[0].complete and fills[0].filled_qty == 1.0
    assert leg.status is OrderStatus.FILLED and leg.filled == 1.0


def test_partial_fill_keeps_leg_open():
    leg = _leg("1", qty=2.0)
    fills = detect_fills([leg], [{"id": "1", "filled": 0.5}])
    assert len(fills) == 1
    assert not fills[0].complete and fills[0].filled_qty == 0.5
    assert leg.is_open and leg.filled == 0.5

    # same report again is not a new fill
    assert detect_fills([leg], [{"id": "1", "filled": 0.5}]) == []

    fills = detect_fills([leg], [{"id": "1", "filled": 1.25}])
    assert fills[0].filled_qty == pytest.approx(0.75)


def test_fill_detection_is_monotonic():
    leg = _leg("1", qty=2.0)
    detect_fills([leg], [{"id": "1", "filled": 1.0}])
    # an exchange reporting less than before never un-fills the leg
    assert detect_fills([leg], [{"id": "1", "filled": 0.2}]) == []
    assert leg.filled == 1.0

    detect_fills([leg], [])
    assert leg.status is OrderStatus.FILLED
    # FILLED is final even if the id shows up again
    assert detect_fills([leg], [{"id": "1", "filled": 0.0}]) == []
    assert leg.status is OrderStatus.FILLED


def test_unplaced_and_cancelled_legs_are_ignored():
    unplaced = _leg(None)
    cancelled = _leg("2")
    cancelled.status = OrderStatus.CANCELLED
    assert detect_fills([unplaced, cancelled], []) == []
