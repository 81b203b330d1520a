import pytest

from engines.errors import ConfigError
from engines.models import (
    ReferenceSource,
    SessionConfig,
    SessionStatus,
    StrategyKind,
    round_amount,
)


def test_round_amount_is_half_away_from_zero():
    assert round_amount(0.123456785) == 0.12345679
    assert round_amount(-0.123456785) == -0.12345679
    assert round_amount(2.5, 0) == 3.0
    assert round_amount(44775.0) == 44775.0


def test_round_amount_truncates_to_eight_places():
    assert round_amount(500 / 44775) == 0.01116695


def test_spread_fraction_is_percent():
    cfg = SessionConfig(exchange="mexc", symbol="BTC/USDT", spread_pct=0.5, total_amount=100)
    assert cfg.spread_fraction == pytest.approx(0.005)


@pytest.mark.parametrize("overrides", [
    {"symbol": "BTCUSDT"},
    {"spread_pct": 0},
    {"spread_pct": 150},
    {"total_amount": 0},
    {"exchange": ""},
])
def test_validate_rejects_bad_cluster_config(overrides):
    fields = dict(exchange="mexc", symbol="BTC/USDT", spread_pct=0.5, total_amount=100)
    fields.update(overrides)
    with pytest.raises(ConfigError):
        SessionConfig(**fields).validate()


def test_validate_ladder_rules():
    base = dict(exchange="mexc", symbol="BTC/USDT", spread_pct=1.0, total_amount=0,
                strategy=StrategyKind.LADDER)
    # ladder sizes come from base_order_size, capital is not required
    SessionConfig(**base).validate()

    with pytest.raises(ConfigError):
        SessionConfig(order_count=1, **base).validate()
    with pytest.raises(ConfigError):
        SessionConfig(base_order_size=0, **base).validate()
    with pytest.raises(ConfigError):
        SessionConfig(price_move_threshold_pct=0, **base).validate()


def test_from_dict_normalizes_and_defaults():
    cfg = SessionConfig.from_dict({
        "exchange": "MEXC",
        "symbol": "btc/usdt",
        "spread_pct": "0.5",
        "total_amount": 1000,
        "reference_source": "external",
    })
    assert cfg.exchange == "mexc"
    assert cfg.symbol == "BTC/USDT"
    assert cfg.spread_pct == 0.5
    assert cfg.reference_source is ReferenceSource.EXTERNAL
    assert cfg.strategy is StrategyKind.CLUSTER
    assert cfg.base_order_size == 0.001
    assert cfg.refresh_interval_secs == 30.0
    assert cfg.price_move_threshold_pct == 0.5


def test_from_dict_survives_to_dict():
    cfg = SessionConfig(exchange="bitmart", symbol="ETH/USDT", spread_pct=1.0, total_amount=0,
                        strategy=StrategyKind.LADDER, order_count=6)
    assert SessionConfig.from_dict(cfg.to_dict()) == cfg


@pytest.mark.parametrize("payload", [
    {"symbol": "BTC/USDT", "spread_pct": 0.5},
    {"exchange": "mexc", "symbol": "BTC/USDT", "spread_pct": "wide"},
    {"exchange": "mexc", "symbol": "BTC/USDT", "spread_pct": 0.5, "strategy": "GRID"},
])
def test_from_dict_raises_config_error(payload):
    with pytest.raises(ConfigError):
        SessionConfig.from_dict(payload)


def test_status_flags():
    assert SessionStatus.RUNNING.resumable
    assert SessionStatus.STARTING.resumable
    assert not SessionStatus.PAUSED.resumable
    assert SessionStatus.STOPPED.terminal
    assert SessionStatus.FAILED.terminal
    assert not SessionStatus.PAUSED.terminal
