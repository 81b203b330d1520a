"""
MMDesk — Market-Making Session Engine
======================================
Runs one session: keeps a placement strategy's orders resting around a
reference price, polls for fills, relists or re-centres, persists every
mutation.

Lifecycle:
  1. start() — connect gateway, validate symbol, initial reference price, open orders
  2. fill loop — poll open orders, detect fills, relist (cluster strategy)
  3. refresh loop — re-centre clusters / run the ladder cycle
  4. replacement timer — delayed relists for EXTERNAL-priced clusters
  5. stop() — cancel everything best-effort, persist STOPPED

All strategy work runs under one per-engine lock. A fill tick that finds the
lock held is skipped; refreshes and delayed replacements wait for it.
"""

import asyncio
import time
import logging
from typing import Callable, Dict, List, Optional

from .errors import FatalStartError, PersistenceError, TransientFetchError
from .inventory import InventoryTracker
from .models import Fill, LiveOrder, Session, SessionStatus
from .strategies import PlacementStrategy, build_strategy
from .timers import ReplacementTimer

logger = logging.getLogger("mmdesk.mm")


class MarketMakingEngine:
    """
    One engine per session.

    gateway_factory(exchange, credentials, config) builds the order gateway;
    oracle_factory(session, gateway) builds the reference price oracle.
    Both are injected so the manager (and tests) decide what they talk to.
    """

    def __init__(self, session: Session, store, gateway_factory: Callable, config,
                 oracle_factory: Callable, strategy: PlacementStrategy = None):
        self.session = session
        self.store = store
        self.config = config
        self._gateway_factory = gateway_factory
        self._oracle_factory = oracle_factory

        self.strategy = strategy or build_strategy(session, config)
        self.strategy.attach(self)
        self.inventory = InventoryTracker(session.config.symbol, label=f"{self.tag} ")
        self.timer = ReplacementTimer(self._on_replacement, name=session.short_id)

        self.gateway = None
        self.oracle = None

        # State
        self._lock = asyncio.Lock()
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._run_started: Optional[float] = None
        self._uptime_base = session.uptime_secs

        # Stats
        self._ticks = 0
        self._ticks_skipped = 0
        self._refreshes = 0
        self._loop_errors = 0

    @property
    def tag(self) -> str:
        return f"[{self.session.short_id}]"

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ──

    async def start(self, credentials, resume: bool = False):
        """Bring the session to RUNNING, or mark it FAILED and re-raise."""
        cfg = self.session.config
        mode = "resuming" if resume else "starting"
        logger.info(f"{self.tag} {mode} {cfg.strategy.value} on {cfg.exchange} {cfg.symbol} "
                    f"(spread {cfg.spread_pct}%, ref {cfg.reference_source.value})")

        try:
            self.gateway = self._gateway_factory(cfg.exchange, credentials, self.config)
            await self.gateway.connect()
            if not self.gateway.has_symbol(cfg.symbol):
                raise FatalStartError(f"Symbol {cfg.symbol} is not available on {cfg.exchange}")

            self.oracle = self._oracle_factory(self.session, self.gateway)
            if resume:
                self.oracle.seed(self.session.last_reference_price)
                await self.strategy.cancel_stale()

            ref = await self.oracle.get_reference_price()
            if ref is None:
                raise FatalStartError(f"No initial reference price for {cfg.symbol}")

            async with self._lock:
                await self.strategy.open(ref)
        except Exception as e:
            logger.error(f"{self.tag} start failed: {e}")
            self.session.status = SessionStatus.FAILED
            self.session.error_message = str(e)
            self.session.stopped_at = time.time()
            await self._save_session()
            await self._close()
            raise

        self._running = True
        self._run_started = time.monotonic()
        self.session.status = SessionStatus.RUNNING
        if not self.session.started_at:
            self.session.started_at = time.time()
        await self._save_session()

        if self.strategy.tick_interval:
            self._tasks.append(asyncio.ensure_future(self._fill_loop()))
        if self.strategy.refresh_interval:
            self._tasks.append(asyncio.ensure_future(self._refresh_loop()))
        self._tasks.append(asyncio.ensure_future(self._stats_loop()))

        logger.info(f"{self.tag} RUNNING — {self.session.orders_placed} order(s) placed")

    async def pause(self) -> bool:
        """Stop evaluating the loops. Resting orders stay on the book."""
        if self.session.status is not SessionStatus.RUNNING:
            return False
        self.session.status = SessionStatus.PAUSED
        await self._save_session()
        logger.info(f"{self.tag} paused")
        return True

    async def resume(self) -> bool:
        if self.session.status is not SessionStatus.PAUSED:
            return False
        self.session.status = SessionStatus.RUNNING
        await self._save_session()
        logger.info(f"{self.tag} resumed")
        return True

    async def stop(self):
        """Cancel everything best-effort and persist STOPPED."""
        if self.session.status.terminal:
            return
        logger.info(f"{self.tag} stopping...")
        await self._wind_down(SessionStatus.STOPPED)
        logger.info(f"{self.tag} STOPPED — fills {self.session.fills}, "
                    f"pnl {self.session.total_pnl:.4f}")

    async def halt(self):
        """Process shutdown: cancel orders and loops but leave the status resumable."""
        if self.session.status.terminal:
            return
        await self._wind_down(None)
        logger.info(f"{self.tag} halted ({self.session.status.value}, resumable)")

    async def abort(self):
        """Last resort after the shutdown grace period: kill tasks, no exchange calls."""
        self._running = False
        self.timer.cancel()
        await self._cancel_tasks()
        await self._close()
        logger.warning(f"{self.tag} aborted")

    async def _wind_down(self, final_status: Optional[SessionStatus]):
        self._running = False
        async with self._lock:
            await self._cancel_tasks()
            dropped = self.timer.cancel()
            if dropped:
                logger.info(f"{self.tag} dropped {len(dropped)} pending replacement leg(s)")
            try:
                cancelled = await self.strategy.cancel_all()
                logger.info(f"{self.tag} cancelled {cancelled} resting order(s)")
            except Exception as e:
                logger.error(f"{self.tag} cancel on stop failed: {e}", exc_info=True)

            self._update_uptime()
            if final_status is not None:
                self.session.status = final_status
                self.session.stopped_at = time.time()
            await self._save_session()
        await self._close()

    async def _cancel_tasks(self):
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []

    async def _close(self):
        if self.oracle is not None:
            await self.oracle.close()
        if self.gateway is not None:
            await self.gateway.close()

    # ── Loops ──

    async def _fill_loop(self):
        """Poll open orders every tick_interval. Skips a tick if the lock is busy."""
        while self._running:
            await asyncio.sleep(self.strategy.tick_interval)
            if not self._running or self.session.status is not SessionStatus.RUNNING:
                continue
            if self._lock.locked():
                self._ticks_skipped += 1
                logger.debug(f"{self.tag} fill check skipped (engine busy)")
                continue

            before = self._counters()
            try:
                async with self._lock:
                    self._ticks += 1
                    await self.strategy.on_tick()
            except TransientFetchError as e:
                logger.warning(f"{self.tag} fill check: {e}")
            except Exception as e:
                self._loop_errors += 1
                logger.error(f"{self.tag} fill check error: {e}", exc_info=True)
                self.note_error(f"fill check error: {e}")

            if self._counters() != before:
                await self._save_session()

    async def _refresh_loop(self):
        """Re-centre / ladder cycle every refresh_interval. Waits for the lock."""
        while self._running:
            await asyncio.sleep(self.strategy.refresh_interval)
            if not self._running or self.session.status is not SessionStatus.RUNNING:
                continue

            try:
                async with self._lock:
                    if not self._running:
                        break
                    self._refreshes += 1
                    await self.strategy.on_refresh()
            except TransientFetchError as e:
                logger.warning(f"{self.tag} refresh: {e}")
            except Exception as e:
                self._loop_errors += 1
                logger.error(f"{self.tag} refresh error: {e}", exc_info=True)
                self.note_error(f"refresh error: {e}")

            await self._save_session()

    async def _stats_loop(self):
        """Persist uptime and counters periodically."""
        while self._running:
            await asyncio.sleep(self.config.stats_interval_secs)
            if not self._running:
                break
            self._update_uptime()
            await self._save_session()

    async def _on_replacement(self, legs: List[LiveOrder]):
        async with self._lock:
            if not self._running:
                return
            if self.session.status is SessionStatus.PAUSED:
                # hold the batch until the session runs again
                self.timer.schedule(legs, self.config.replacement_delay_secs)
                return
            await self.strategy.replace_legs(legs)
        await self._save_session()

    # ── Strategy callbacks ──

    def record_fill(self, fill: Fill):
        order = fill.order
        realized = self.inventory.record_fill(order.side, order.price, fill.filled_qty)
        self.session.fills += 1
        self.session.total_pnl += realized
        kind = "filled" if fill.complete else "partially filled"
        logger.info(f"{self.tag} {order.side.value.upper()} {order.order_id} {kind} "
                    f"({fill.filled_qty} @ {order.price})")

    def schedule_replacement(self, legs: List[LiveOrder]):
        self.timer.schedule(legs, self.config.replacement_delay_secs)

    def note_error(self, message: str):
        self.session.error_message = message
        logger.warning(f"{self.tag} {message}")

    async def persist(self, label: str, write):
        """Await a store write. Failures are logged; in-memory state stays authoritative."""
        try:
            return await write
        except PersistenceError as e:
            logger.error(f"{self.tag} persist {label} failed: {e}")
            return None

    # ── Internals ──

    def _counters(self):
        s = self.session
        return (s.fills, s.orders_placed, s.clusters_placed, s.error_message)

    def _update_uptime(self):
        if self._run_started is not None:
            self.session.uptime_secs = int(self._uptime_base + time.monotonic() - self._run_started)

    async def _save_session(self):
        await self.persist("update_session", self.store.update_session(self.session))

    # ── Stats ──

    def get_status(self) -> Dict:
        """Status snapshot for the control API."""
        s = self.session
        self._update_uptime()
        return {
            "session_id": s.session_id,
            "user_id": s.user_id,
            "status": s.status.value,
            "error_message": s.error_message,
            "config": s.config.to_dict(),
            "clusters_placed": s.clusters_placed,
            "orders_placed": s.orders_placed,
            "fills": s.fills,
            "total_pnl": round(s.total_pnl, 8),
            "uptime_secs": s.uptime_secs,
            "last_reference_price": s.last_reference_price,
            "created_at": s.created_at,
            "started_at": s.started_at,
            "stopped_at": s.stopped_at,
            "strategy": self.strategy.snapshot(),
            "inventory": self.inventory.get_stats(),
            "pending_replacement": {
                "legs": len(self.timer.pending_items),
                "fires_in": self.timer.fires_in,
            } if self.timer.pending else None,
            "loops": {
                "ticks": self._ticks,
                "ticks_skipped": self._ticks_skipped,
                "refreshes": self._refreshes,
                "errors": self._loop_errors,
            },
            "gateway": self.gateway.get_stats() if self.gateway else None,
            "oracle": self.oracle.get_stats() if self.oracle else None,
        }
