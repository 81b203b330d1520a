"""
MMDesk — Data Model
====================
Sessions, clusters, ladder rungs and the live-order references the engine
reconciles against the exchange.
"""

import time
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from .errors import ConfigError

PRICE_DECIMALS = 8


def round_amount(value: float, decimals: int = PRICE_DECIMALS) -> float:
    """Round half away from zero at a fixed decimal precision."""
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class ReferenceSource(Enum):
    EXCHANGE = "EXCHANGE"
    EXTERNAL = "EXTERNAL"


class StrategyKind(Enum):
    CLUSTER = "CLUSTER"
    LADDER = "LADDER"


class SessionStatus(Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def resumable(self) -> bool:
        return self in (SessionStatus.RUNNING, SessionStatus.STARTING)

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.FAILED)


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


# ─────────────────────────────────────────────
# Session
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class SessionConfig:
    """Immutable configuration of one market-making run."""
    exchange: str
    symbol: str
    spread_pct: float                   # 0.5 = 0.5% each side of mid
    total_amount: float                 # quote capital to deploy
    reference_source: ReferenceSource = ReferenceSource.EXCHANGE
    strategy: StrategyKind = StrategyKind.CLUSTER

    # Ladder only
    order_count: int = 10
    base_order_size: float = 0.001
    refresh_interval_secs: float = 30.0
    price_move_threshold_pct: float = 0.5

    @property
    def spread_fraction(self) -> float:
        return self.spread_pct / 100.0

    def validate(self):
        """Raise ConfigError before anything touches the exchange."""
        if not self.exchange:
            raise ConfigError("exchange is required")
        if not self.symbol or "/" not in self.symbol:
            raise ConfigError(f"Invalid symbol {self.symbol!r}, expected BASE/QUOTE")
        if not 0 < self.spread_pct < 100:
            raise ConfigError(f"spread_pct must be in (0, 100), got {self.spread_pct}")
        if self.strategy is StrategyKind.CLUSTER and self.total_amount <= 0:
            raise ConfigError(f"total_amount must be positive, got {self.total_amount}")
        if self.strategy is StrategyKind.LADDER:
            if self.order_count < 2:
                raise ConfigError(f"order_count must be at least 2, got {self.order_count}")
            if self.base_order_size <= 0:
                raise ConfigError(f"base_order_size must be positive, got {self.base_order_size}")
            if self.refresh_interval_secs <= 0:
                raise ConfigError("refresh_interval_secs must be positive")
            if self.price_move_threshold_pct <= 0:
                raise ConfigError("price_move_threshold_pct must be positive")

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["reference_source"] = self.reference_source.value
        data["strategy"] = self.strategy.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionConfig":
        """Build from persisted / request JSON. Unknown enum values are ConfigErrors."""
        try:
            return cls(
                exchange=str(data["exchange"]).lower(),
                symbol=str(data["symbol"]).upper(),
                spread_pct=float(data["spread_pct"]),
                total_amount=float(data.get("total_amount", 0) or 0),
                reference_source=ReferenceSource(str(data.get("reference_source", "EXCHANGE")).upper()),
                strategy=StrategyKind(str(data.get("strategy", "CLUSTER")).upper()),
                order_count=int(data.get("order_count", 10)),
                base_order_size=float(data.get("base_order_size", 0.001)),
                refresh_interval_secs=float(data.get("refresh_interval_secs", 30.0)),
                price_move_threshold_pct=float(data.get("price_move_threshold_pct", 0.5)),
            )
        except KeyError as e:
            raise ConfigError(f"Missing config field: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid session config: {e}") from e


@dataclass
class Session:
    """One user's market-making session with its mutable counters."""
    session_id: str
    user_id: str
    config: SessionConfig
    status: SessionStatus = SessionStatus.STARTING
    error_message: Optional[str] = None

    clusters_placed: int = 0
    orders_placed: int = 0
    fills: int = 0
    total_pnl: float = 0.0
    uptime_secs: int = 0
    last_reference_price: Optional[float] = None

    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None

    @property
    def short_id(self) -> str:
        return self.session_id[:8]


# ─────────────────────────────────────────────
# Orders
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class OrderIntent:
    """An order the strategy wants resting on the book."""
    side: OrderSide
    price: float
    quantity: float
    level: int = 1

    @property
    def slot(self):
        return (self.side, self.level)


@dataclass
class LiveOrder:
    """What the engine believes is resting on the exchange."""
    order_id: Optional[str]
    side: OrderSide
    price: float
    quantity: float
    level: int = 1
    filled: float = 0.0
    status: OrderStatus = OrderStatus.OPEN
    placed_at: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.status is OrderStatus.OPEN

    @property
    def slot(self):
        return (self.side, self.level)

    @classmethod
    def unplaced(cls, intent: OrderIntent) -> "LiveOrder":
        return cls(order_id=None, side=intent.side, price=intent.price,
                   quantity=intent.quantity, level=intent.level)

    def to_dict(self) -> Dict:
        return {
            "order_id": self.order_id,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "level": self.level,
            "filled": self.filled,
            "status": self.status.value,
            "placed_at": self.placed_at,
        }


@dataclass
class Cluster:
    """Matched buy + sell pair priced symmetrically around mid_price."""
    sequence: int
    mid_price: float
    buy: LiveOrder
    sell: LiveOrder
    created_at: float = field(default_factory=time.time)
    last_checked: float = 0.0

    @property
    def legs(self) -> List[LiveOrder]:
        return [self.buy, self.sell]

    def to_dict(self) -> Dict:
        return {
            "sequence": self.sequence,
            "mid_price": self.mid_price,
            "buy": self.buy.to_dict(),
            "sell": self.sell.to_dict(),
            "created_at": self.created_at,
            "last_checked": self.last_checked,
        }


@dataclass
class Fill:
    """A fill event detected by reconciliation."""
    order: LiveOrder
    filled_qty: float         # quantity newly filled since the last check
    complete: bool            # order gone from the open-order set
