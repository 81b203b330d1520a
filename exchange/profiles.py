"""
MMDesk — Exchange Capability Descriptors
=========================================
Per-exchange auth quirks kept as data so the gateway never branches on names.

  bingx    → memo passed as ccxt `password`
  bitmart  → memo passed as ccxt `uid`
  ascendx  → ccxt `ascendex`, memo unused, account group loaded after connect
  gateio   → memo passed as ccxt `password`
  mexc     → memo passed as ccxt `password`
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional

from engines.errors import ConfigError


@dataclass(frozen=True)
class ExchangeCredentials:
    api_key: str
    secret: str
    memo: Optional[str] = None

    def __repr__(self) -> str:
        # Never leak secrets into logs
        return f"ExchangeCredentials(api_key={self.api_key[:4]}…)"


@dataclass(frozen=True)
class ExchangeProfile:
    """How to build an authenticated ccxt client for one venue."""
    name: str                           # name users pick (e.g. "ascendx")
    ccxt_id: str                        # ccxt class name (e.g. "ascendex")
    memo_field: Optional[str] = "password"
    load_accounts: bool = False         # run exchange.load_accounts() after markets

    def client_options(self, credentials: Optional[ExchangeCredentials]) -> Dict:
        options = {
            "enableRateLimit": True,
            "options": {"defaultType": "spot"},
        }
        if credentials:
            options["apiKey"] = credentials.api_key
            options["secret"] = credentials.secret
            if credentials.memo and self.memo_field:
                options[self.memo_field] = credentials.memo
        return options


EXCHANGE_PROFILES: Dict[str, ExchangeProfile] = {
    "bingx": ExchangeProfile("bingx", "bingx"),
    "bitmart": ExchangeProfile("bitmart", "bitmart", memo_field="uid"),
    "ascendx": ExchangeProfile("ascendx", "ascendex", memo_field=None, load_accounts=True),
    "gateio": ExchangeProfile("gateio", "gateio"),
    "mexc": ExchangeProfile("mexc", "mexc"),
}


def get_profile(exchange: str) -> ExchangeProfile:
    profile = EXCHANGE_PROFILES.get((exchange or "").lower())
    if profile is None:
        raise ConfigError(
            f"Exchange {exchange!r} not supported (have: {', '.join(sorted(EXCHANGE_PROFILES))})"
        )
    return profile


class EnvCredentialsProvider:
    """Reads <EXCHANGE>_API_KEY / _API_SECRET / _API_MEMO from the environment."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    async def get_credentials(self, user_id: str, exchange: str) -> Optional[ExchangeCredentials]:
        prefix = exchange.upper()
        api_key = self._environ.get(f"{prefix}_API_KEY", "")
        secret = self._environ.get(f"{prefix}_API_SECRET", "")
        if not api_key or not secret:
            return None
        return ExchangeCredentials(api_key, secret, self._environ.get(f"{prefix}_API_MEMO") or None)
