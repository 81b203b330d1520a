"""
MMDesk — Error Taxonomy
========================
Only ConfigError and FatalStartError keep a session from reaching RUNNING.
Everything else is absorbed by the engine loops and surfaced through the
session error message and logs.
"""


class MarketMakingError(Exception):
    """Base class for engine-visible failures."""


class ConfigError(MarketMakingError):
    """Bad symbol / spread / amount. Rejected before any order is placed."""


class ExchangeRejected(MarketMakingError):
    """Exchange declined an order placement or cancel."""

    def __init__(self, message: str, order_id: str = None):
        self.order_id = order_id
        super().__init__(message)


class TransientFetchError(MarketMakingError):
    """Price / open-orders fetch failed. Retried on the next timer tick."""


class PersistenceError(MarketMakingError):
    """Store write failed. In-memory state stays authoritative."""


class FatalStartError(MarketMakingError):
    """Symbol unavailable, no credentials, no initial price."""
