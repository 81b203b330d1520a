"""
MMDesk — Unified Configuration
===============================
Central configuration for the session engine + shared infrastructure.
Loads from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass

from exchange.profiles import EXCHANGE_PROFILES


@dataclass
class EngineConfig:
    """Engine timing and transport tunables shared by every session."""
    # Orders
    paper_mode: bool = True             # keep orders in a local book, market data stays live

    # Cluster timers
    fill_check_secs: float = 5.0        # poll open orders every 5s
    cluster_refresh_secs: float = 120.0 # re-centre EXCHANGE-priced clusters every 2min
    replacement_delay_secs: float = 120.0  # EXTERNAL cooldown before relisting fills
    leg_pause_secs: float = 0.2         # pause between buy and sell placement
    ladder_pause_secs: float = 0.1      # pause between ladder rung placements / cancels

    # Transport
    request_timeout_secs: float = 10.0
    max_requests_per_second: float = 5.0

    # Lifecycle
    shutdown_grace_secs: float = 15.0
    stats_interval_secs: float = 60.0   # uptime / status persistence cadence


class Config:
    """
    Master configuration for MMDesk.

    Hierarchy:
      1. Environment variables (highest priority)
      2. Defaults (coded here)
    """

    # ── Mode ──
    PAPER_MODE: bool = True

    # ── Identity ──
    VERSION: str = "1.0.0"
    INSTANCE_NAME: str = "mmdesk"

    # ── Reference prices ──
    EXTERNAL_PRICE_URL: str = (
        "https://api.dexscreener.com/latest/dex/pairs/bsc/"
        "0x13f80c53b837622e899e1ac0021ed3d1775caefa"
    )

    # ── Dashboard / control API ──
    DASHBOARD_PORT: int = 8081
    DASHBOARD_HOST: str = "0.0.0.0"

    # ── Logging ──
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/mmdesk.log"

    # ── Data Store ──
    DATA_DIR: str = "data"
    DB_FILE: str = "mmdesk.db"

    # ── Engine Config ──
    engine: EngineConfig = None

    def __init__(self):
        self.engine = EngineConfig()
        self._load_env()

    @property
    def db_path(self) -> str:
        return os.path.join(self.DATA_DIR, self.DB_FILE)

    def _load_env(self):
        """Load configuration from environment variables."""
        # Mode
        self.PAPER_MODE = os.environ.get("PAPER_MODE", "true").lower() in ("true", "1", "yes")
        self.engine.paper_mode = self.PAPER_MODE

        # Feeds
        self.EXTERNAL_PRICE_URL = os.environ.get("EXTERNAL_PRICE_URL", self.EXTERNAL_PRICE_URL)

        # Dashboard
        self.DASHBOARD_PORT = int(os.environ.get("DASHBOARD_PORT", str(self.DASHBOARD_PORT)))
        self.DASHBOARD_HOST = os.environ.get("DASHBOARD_HOST", self.DASHBOARD_HOST)

        # Logging
        self.LOG_LEVEL = os.environ.get("LOG_LEVEL", self.LOG_LEVEL)
        self.LOG_FILE = os.environ.get("LOG_FILE", self.LOG_FILE)

        # Storage
        self.DATA_DIR = os.environ.get("DATA_DIR", self.DATA_DIR)

        # Engine overrides
        if os.environ.get("MM_FILL_CHECK_SECS"):
            self.engine.fill_check_secs = float(os.environ["MM_FILL_CHECK_SECS"])
        if os.environ.get("MM_CLUSTER_REFRESH_SECS"):
            self.engine.cluster_refresh_secs = float(os.environ["MM_CLUSTER_REFRESH_SECS"])
        if os.environ.get("MM_REPLACEMENT_DELAY_SECS"):
            self.engine.replacement_delay_secs = float(os.environ["MM_REPLACEMENT_DELAY_SECS"])
        if os.environ.get("MM_REQUEST_TIMEOUT_SECS"):
            self.engine.request_timeout_secs = float(os.environ["MM_REQUEST_TIMEOUT_SECS"])
        if os.environ.get("MM_MAX_RPS"):
            self.engine.max_requests_per_second = float(os.environ["MM_MAX_RPS"])
        if os.environ.get("MM_SHUTDOWN_GRACE_SECS"):
            self.engine.shutdown_grace_secs = float(os.environ["MM_SHUTDOWN_GRACE_SECS"])

    def validate(self) -> list:
        """Validate config and return list of warnings."""
        warnings = []

        if not self.PAPER_MODE:
            missing = [
                name for name in EXCHANGE_PROFILES
                if not os.environ.get(f"{name.upper()}_API_KEY")
            ]
            if len(missing) == len(EXCHANGE_PROFILES):
                warnings.append("CRITICAL: no <EXCHANGE>_API_KEY set — no session can trade live")

        if self.engine.fill_check_secs >= self.engine.cluster_refresh_secs:
            warnings.append("WARNING: fill check slower than cluster refresh — fills may be missed")

        if self.engine.request_timeout_secs > self.engine.fill_check_secs * 4:
            warnings.append(f"WARNING: request timeout {self.engine.request_timeout_secs}s is long for a "
                            f"{self.engine.fill_check_secs}s fill check")

        if not self.EXTERNAL_PRICE_URL.startswith("http"):
            warnings.append("WARNING: EXTERNAL_PRICE_URL is not an http(s) URL — EXTERNAL sessions cannot start")

        return warnings

    def summary(self) -> str:
        """Human-readable config summary."""
        mode = "PAPER" if self.PAPER_MODE else "🔴 LIVE"
        return (
            f"MMDesk v{self.VERSION} — {mode}\n"
            f"─── Engine ───\n"
            f"  Fill check: {self.engine.fill_check_secs:.0f}s\n"
            f"  Cluster refresh: {self.engine.cluster_refresh_secs:.0f}s\n"
            f"  Replacement delay: {self.engine.replacement_delay_secs:.0f}s\n"
            f"  Request timeout: {self.engine.request_timeout_secs:.0f}s @ {self.engine.max_requests_per_second} rps\n"
            f"─── Exchanges ───\n"
            f"  {', '.join(sorted(EXCHANGE_PROFILES))}\n"
            f"─── Infra ───\n"
            f"  Dashboard: {self.DASHBOARD_HOST}:{self.DASHBOARD_PORT}\n"
            f"  Store: {self.db_path}\n"
            f"  External feed: {self.EXTERNAL_PRICE_URL}\n"
        )
