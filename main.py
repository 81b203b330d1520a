"""
MMDesk — Main Orchestrator
===========================
Runs the market-making session service:
  - Session store (SQLite) + restart resume of RUNNING sessions
  - Session manager (one engine per session)
  - Control API (start / pause / resume / stop / status)

Usage:
  python main.py                     # Paper mode (default)
  PAPER_MODE=false python main.py    # Live mode (requires <EXCHANGE>_API_KEY / _API_SECRET)
"""

import asyncio
import signal
import os
import time
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

import aiohttp
from aiohttp import web

from config import Config
from engines.errors import ConfigError, FatalStartError, MarketMakingError
from engines.models import SessionConfig
from engines.session_manager import SessionManager, SessionNotFound
from exchange.gateway import create_gateway
from exchange.profiles import EnvCredentialsProvider, get_profile
from feeds.price_oracle import PriceOracle
from storage.session_store import SessionStore


# ─────────────────────────────────────────────
# Logging Setup
# ─────────────────────────────────────────────

def setup_logging(config: Config):
    """Configure logging with file rotation and console output."""
    os.makedirs(os.path.dirname(config.LOG_FILE) or "logs", exist_ok=True)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # File handler (rotating, 10MB max, 5 backups)
    fh = RotatingFileHandler(config.LOG_FILE, maxBytes=10_000_000, backupCount=5)
    fh.setFormatter(fmt)

    # Console handler
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.addHandler(fh)
    root.addHandler(ch)

    # Quiet noisy libraries
    for name in ("aiohttp", "asyncio", "ccxt", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ─────────────────────────────────────────────
# Control API
# ─────────────────────────────────────────────

class DashboardAPI:
    """
    JSON control surface over an injected SessionManager.

    Endpoints:
      GET  /health                              → liveness
      GET  /api/status                          → service overview
      GET  /api/config                          → config summary
      GET  /api/sessions?user_id=               → list sessions
      POST /api/sessions                        → start a session
      GET  /api/sessions/{id}                   → session status
      POST /api/sessions/{id}/pause|resume|stop → lifecycle
    """

    ACTIONS = ("pause", "resume", "stop")

    def __init__(self, config: Config, manager: SessionManager):
        self.config = config
        self.manager = manager
        self.logger = logging.getLogger("mmdesk.dashboard")
        self._started_at = time.time()
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/api/status", self._handle_status)
        app.router.add_get("/api/config", self._handle_config)
        app.router.add_get("/api/sessions", self._handle_list)
        app.router.add_post("/api/sessions", self._handle_start)
        app.router.add_get("/api/sessions/{session_id}", self._handle_get)
        app.router.add_post("/api/sessions/{session_id}/{action}", self._handle_action)
        return app

    async def start(self):
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.DASHBOARD_HOST, self.config.DASHBOARD_PORT)
        await site.start()
        self.logger.info(f"Control API running on :{self.config.DASHBOARD_PORT}")

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _handle_health(self, request):
        return web.json_response({"status": "ok", "version": self.config.VERSION})

    async def _handle_status(self, request):
        engines = self.manager.engines
        by_status = {}
        for engine in engines.values():
            key = engine.session.status.value
            by_status[key] = by_status.get(key, 0) + 1
        return web.json_response({
            "version": self.config.VERSION,
            "mode": "PAPER" if self.config.PAPER_MODE else "LIVE",
            "uptime_hours": round((time.time() - self._started_at) / 3600, 1),
            "engines": len(engines),
            "by_status": by_status,
        })

    async def _handle_config(self, request):
        return web.json_response({"config": self.config.summary()})

    async def _handle_list(self, request):
        user_id = request.query.get("user_id")
        return web.json_response({"sessions": await self.manager.list_sessions(user_id)})

    async def _handle_start(self, request):
        try:
            body = await request.json()
        except ValueError:
            return self._error(400, "Request body must be JSON")
        if not isinstance(body, dict) or not body.get("user_id"):
            return self._error(400, "user_id is required")

        try:
            config = SessionConfig.from_dict(body)
            get_profile(config.exchange)
            status = await self.manager.start_session(str(body["user_id"]), config)
        except ConfigError as e:
            return self._error(400, str(e))
        except FatalStartError as e:
            return self._error(422, str(e))
        except MarketMakingError as e:
            self.logger.error(f"start_session failed: {e}", exc_info=True)
            return self._error(502, str(e))
        return web.json_response(status, status=201)

    async def _handle_get(self, request):
        try:
            status = await self.manager.get_status(request.match_info["session_id"])
        except SessionNotFound:
            return self._error(404, "Session not found")
        return web.json_response(status)

    async def _handle_action(self, request):
        session_id = request.match_info["session_id"]
        action = request.match_info["action"]
        if action not in self.ACTIONS:
            return self._error(404, f"Unknown action {action!r}")

        handler = getattr(self.manager, f"{action}_session")
        try:
            status = await handler(session_id)
        except SessionNotFound:
            return self._error(404, "Session not found")
        except ConfigError as e:
            return self._error(409, str(e))
        except FatalStartError as e:
            return self._error(422, str(e))
        except MarketMakingError as e:
            self.logger.error(f"{action} {session_id} failed: {e}", exc_info=True)
            return self._error(502, str(e))
        return web.json_response(status)

    @staticmethod
    def _error(status: int, message: str):
        return web.json_response({"error": message}, status=status)


# ─────────────────────────────────────────────
# Main Orchestrator
# ─────────────────────────────────────────────

class MMDesk:
    """
    Main orchestrator — wires everything together and runs.

    Startup sequence:
      1. Load config, set up logging
      2. Open the session store and the shared HTTP session
      3. Build the session manager and resume sessions from the last run
      4. Serve the control API until a shutdown signal
      5. Halt every engine (orders cancelled, sessions left resumable)
    """

    def __init__(self):
        self.config = Config()
        self.logger = logging.getLogger("mmdesk.main")

        self.store: Optional[SessionStore] = None
        self.http: Optional[aiohttp.ClientSession] = None
        self.manager: Optional[SessionManager] = None
        self.dashboard: Optional[DashboardAPI] = None

        self._stopped = asyncio.Event()
        self._shutting_down = False

    def _build_oracle(self, session, gateway) -> PriceOracle:
        return PriceOracle(
            session.config.reference_source,
            session.config.symbol,
            gateway=gateway,
            http_session=self.http,
            url=self.config.EXTERNAL_PRICE_URL,
            timeout_secs=self.config.engine.request_timeout_secs,
        )

    async def start(self):
        """Initialize and start everything."""
        setup_logging(self.config)

        warnings = self.config.validate()
        for w in warnings:
            self.logger.warning(w)

        self.logger.info(f"\n{self.config.summary()}")

        os.makedirs(self.config.DATA_DIR, exist_ok=True)
        self.store = SessionStore(self.config.db_path)
        await self.store.connect()
        self.http = aiohttp.ClientSession()

        self.manager = SessionManager(
            store=self.store,
            gateway_factory=create_gateway,
            credentials_provider=EnvCredentialsProvider(),
            config=self.config.engine,
            oracle_factory=self._build_oracle,
        )
        self.dashboard = DashboardAPI(self.config, self.manager)

        try:
            await self.manager.resume_all()
            await self.dashboard.start()
            await self._stopped.wait()
        except asyncio.CancelledError:
            self.logger.info("Shutdown signal received")
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Graceful shutdown."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.logger.info("Shutting down MMDesk...")

        if self.dashboard:
            await self.dashboard.stop()
        if self.manager:
            await self.manager.shutdown()
        if self.http:
            await self.http.close()
        if self.store:
            await self.store.close()

        self._stopped.set()
        self.logger.info("Shutdown complete")


# ─────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────

def main():
    """Entry point for MMDesk."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = MMDesk()

    # Handle SIGINT/SIGTERM
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.shutdown()))

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        loop.run_until_complete(app.shutdown())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
