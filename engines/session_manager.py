"""
MMDesk — Session Lifecycle Manager
===================================
Owns the registry of running engines (one per session id) and routes
start / pause / resume / stop requests to them. On process start it resumes
every session the store still records as RUNNING or STARTING; on shutdown it
halts all engines within a grace period.
"""

import asyncio
import secrets
import logging
from typing import Callable, Dict, List, Optional

from .errors import ConfigError, FatalStartError, PersistenceError
from .market_maker import MarketMakingEngine
from .models import Session, SessionConfig, SessionStatus

logger = logging.getLogger("mmdesk.sessions")


class SessionNotFound(KeyError):
    pass


class SessionManager:

    def __init__(self, store, gateway_factory: Callable, credentials_provider, config,
                 oracle_factory: Callable):
        self.store = store
        self.config = config
        self._gateway_factory = gateway_factory
        self._credentials = credentials_provider
        self._oracle_factory = oracle_factory
        self._engines: Dict[str, MarketMakingEngine] = {}
        self._lock = asyncio.Lock()

    @property
    def engines(self) -> Dict[str, MarketMakingEngine]:
        return dict(self._engines)

    # ── Requests ──

    async def start_session(self, user_id: str, config: SessionConfig) -> Dict:
        """Validate, persist STARTING, start the engine. Returns its status."""
        config.validate()
        session = Session(
            session_id=secrets.token_hex(16),
            user_id=user_id,
            config=config,
        )
        await self.store.create_session(session)
        logger.info(f"[{session.short_id}] created for user {user_id}: "
                    f"{config.exchange} {config.symbol} {config.strategy.value}")

        engine = await self._launch(session, resume=False)
        return engine.get_status()

    async def stop_session(self, session_id: str) -> Dict:
        engine = self._engines.get(session_id)
        if engine is None:
            return await self._stop_orphan(session_id)
        await engine.stop()
        self._engines.pop(session_id, None)
        return engine.get_status()

    async def pause_session(self, session_id: str) -> Dict:
        engine = self._require(session_id)
        await engine.pause()
        return engine.get_status()

    async def resume_session(self, session_id: str) -> Dict:
        engine = self._engines.get(session_id)
        if engine is not None:
            await engine.resume()
            return engine.get_status()

        # a PAUSED session from a previous process has no engine yet
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status is not SessionStatus.PAUSED:
            raise ConfigError(f"Session {session_id} is {session.status.value}, not PAUSED")
        engine = await self._launch(session, resume=True)
        return engine.get_status()

    async def get_status(self, session_id: str) -> Dict:
        engine = self._engines.get(session_id)
        if engine is not None:
            return engine.get_status()
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return self._stored_status(session)

    async def list_sessions(self, user_id: str = None) -> List[Dict]:
        sessions = await self.store.list_sessions(user_id)
        out = []
        for session in sessions:
            engine = self._engines.get(session.session_id)
            out.append(engine.get_status() if engine else self._stored_status(session))
        return out

    # ── Restart / shutdown ──

    async def resume_all(self) -> Dict[str, str]:
        """Resume every RUNNING / STARTING session the store remembers.

        Each ends RUNNING or FAILED; one failure never blocks the others.
        """
        sessions = await self.store.list_sessions_by_status(
            SessionStatus.RUNNING, SessionStatus.STARTING)
        pending = [s for s in sessions if s.session_id not in self._engines]
        if not pending:
            logger.info("No sessions to resume")
            return {}

        logger.info(f"Resuming {len(pending)} session(s)...")
        results = await asyncio.gather(
            *(self._launch(s, resume=True) for s in pending),
            return_exceptions=True,
        )

        outcome = {}
        for session, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(f"[{session.short_id}] resume failed: {result}")
                outcome[session.session_id] = SessionStatus.FAILED.value
            else:
                outcome[session.session_id] = result.session.status.value
        resumed = sum(1 for v in outcome.values() if v == SessionStatus.RUNNING.value)
        logger.info(f"Resume complete: {resumed}/{len(pending)} running")
        return outcome

    async def shutdown(self, grace_secs: float = None):
        """Halt all engines concurrently; abort whatever outlives the grace period."""
        grace = self.config.shutdown_grace_secs if grace_secs is None else grace_secs
        engines = list(self._engines.values())
        if not engines:
            return

        logger.info(f"Halting {len(engines)} engine(s) (grace {grace:.0f}s)...")
        tasks = [asyncio.ensure_future(e.halt()) for e in engines]
        done, still_running = await asyncio.wait(tasks, timeout=grace)

        for engine, task in zip(engines, tasks):
            if task in still_running:
                task.cancel()
                await engine.abort()
            elif task.exception() is not None:
                logger.error(f"{engine.tag} halt error: {task.exception()}")
                await engine.abort()

        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"{len(still_running)} engine(s) aborted after grace period")
        self._engines.clear()

    # ── Internals ──

    async def _launch(self, session: Session, resume: bool) -> MarketMakingEngine:
        async with self._lock:
            if session.session_id in self._engines:
                return self._engines[session.session_id]
            engine = MarketMakingEngine(
                session, self.store, self._gateway_factory, self.config,
                oracle_factory=self._oracle_factory,
            )
            self._engines[session.session_id] = engine

        try:
            credentials = await self._credentials.get_credentials(
                session.user_id, session.config.exchange)
            if credentials is None and not self.config.paper_mode:
                raise FatalStartError(
                    f"No API credentials for {session.config.exchange} (user {session.user_id})")
            await engine.start(credentials, resume=resume)
        except Exception as e:
            self._engines.pop(session.session_id, None)
            if session.status is not SessionStatus.FAILED:
                # failed before the engine got a chance to record it
                session.status = SessionStatus.FAILED
                session.error_message = str(e)
                await self._save(session)
            raise
        return engine

    def _require(self, session_id: str) -> MarketMakingEngine:
        engine = self._engines.get(session_id)
        if engine is None:
            raise SessionNotFound(session_id)
        return engine

    async def _stop_orphan(self, session_id: str) -> Dict:
        """Stop a session that has no engine in this process (e.g. PAUSED before a restart)."""
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if not session.status.terminal:
            session.status = SessionStatus.STOPPED
            await self._save(session)
            logger.warning(f"[{session.short_id}] stopped without an engine — "
                           f"orders from the previous run may still rest on {session.config.exchange}")
        return self._stored_status(session)

    async def _save(self, session: Session):
        try:
            await self.store.update_session(session)
        except PersistenceError as e:
            logger.error(f"[{session.short_id}] persist update_session failed: {e}")

    @staticmethod
    def _stored_status(session: Session) -> Dict:
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "status": session.status.value,
            "error_message": session.error_message,
            "config": session.config.to_dict(),
            "clusters_placed": session.clusters_placed,
            "orders_placed": session.orders_placed,
            "fills": session.fills,
            "total_pnl": round(session.total_pnl, 8),
            "uptime_secs": session.uptime_secs,
            "last_reference_price": session.last_reference_price,
            "created_at": session.created_at,
            "started_at": session.started_at,
            "stopped_at": session.stopped_at,
        }
