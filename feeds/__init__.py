"""MMDesk — Feed modules."""
from .price_oracle import PriceOracle, parse_external_price, ticker_mid

__all__ = ["PriceOracle", "parse_external_price", "ticker_mid"]
