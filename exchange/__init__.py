"""MMDesk — Exchange access (ccxt gateway + capability descriptors)."""
from .profiles import (
    ExchangeProfile,
    ExchangeCredentials,
    EnvCredentialsProvider,
    EXCHANGE_PROFILES,
    get_profile,
)
from .gateway import ExchangeGateway, PaperOrderBook, RateLimiter, create_gateway

__all__ = [
    "ExchangeProfile",
    "ExchangeCredentials",
    "EnvCredentialsProvider",
    "EXCHANGE_PROFILES",
    "get_profile",
    "ExchangeGateway",
    "PaperOrderBook",
    "RateLimiter",
    "create_gateway",
]
