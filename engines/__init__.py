"""
MMDesk — Market-Making Engines
===============================
MarketMakingEngine: one session's order placement, fill detection and persistence
SessionManager:     registry, start/stop routing, restart resume, shutdown
Strategies:         ClusterStrategy (paired buy/sell), LadderStrategy (multi-level)
"""

from .errors import (
    MarketMakingError,
    ConfigError,
    ExchangeRejected,
    TransientFetchError,
    PersistenceError,
    FatalStartError,
)

from .models import (
    ReferenceSource,
    StrategyKind,
    SessionStatus,
    OrderSide,
    OrderStatus,
    SessionConfig,
    Session,
    OrderIntent,
    LiveOrder,
    Cluster,
    Fill,
    round_amount,
)

from .strategies import (
    PlacementStrategy,
    ClusterStrategy,
    LadderStrategy,
    build_strategy,
    detect_fills,
)

from .timers import ReplacementTimer
from .inventory import InventoryTracker, Position
from .market_maker import MarketMakingEngine
from .session_manager import SessionManager, SessionNotFound

__all__ = [
    # Errors
    "MarketMakingError",
    "ConfigError",
    "ExchangeRejected",
    "TransientFetchError",
    "PersistenceError",
    "FatalStartError",
    # Model
    "ReferenceSource",
    "StrategyKind",
    "SessionStatus",
    "OrderSide",
    "OrderStatus",
    "SessionConfig",
    "Session",
    "OrderIntent",
    "LiveOrder",
    "Cluster",
    "Fill",
    "round_amount",
    # Strategies
    "PlacementStrategy",
    "ClusterStrategy",
    "LadderStrategy",
    "build_strategy",
    "detect_fills",
    # Engine
    "ReplacementTimer",
    "InventoryTracker",
    "Position",
    "MarketMakingEngine",
    "SessionManager",
    "SessionNotFound",
]
