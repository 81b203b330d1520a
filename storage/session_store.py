"""
MMDesk — Session Store
=======================
Durable state for sessions, clusters and ladder orders on one aiosqlite
connection (WAL mode). Rows are keyed per session so concurrent sessions
never touch each other's records.

Tables:
  mm_sessions  — config, status, counters, timestamps
  mm_clusters  — one row per (session_id, sequence), both legs inline
  mm_orders    — ladder rungs, one row per exchange order
"""

import asyncio
import json
import logging
import time
from typing import List, Optional

import aiosqlite

from engines.errors import PersistenceError
from engines.models import (
    Cluster,
    LiveOrder,
    OrderSide,
    OrderStatus,
    Session,
    SessionConfig,
    SessionStatus,
)

logger = logging.getLogger("mmdesk.store")


SESSION_COLUMNS = (
    "status", "error_message", "clusters_placed", "orders_placed", "fills",
    "total_pnl", "uptime_secs", "last_reference_price", "started_at", "stopped_at",
)


class SessionStore:

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def connect(self):
        """Open the database and create tables if they don't exist."""
        try:
            self._db = await aiosqlite.connect(self.db_path, timeout=10)
            await self._db.execute("PRAGMA journal_mode=WAL;")
            self._db.row_factory = aiosqlite.Row
            await self._create_tables()
            logger.info(f"Connected to session store: {self.db_path}")
        except Exception as e:
            logger.critical(f"Failed to open session store at {self.db_path}: {e}", exc_info=True)
            raise

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Session store closed")

    async def _create_tables(self):
        schemas = [
            """
            CREATE TABLE IF NOT EXISTS mm_sessions (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                exchange TEXT NOT NULL,
                symbol TEXT NOT NULL,
                strategy TEXT NOT NULL,
                reference_source TEXT NOT NULL,
                config_json TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                clusters_placed INTEGER DEFAULT 0,
                orders_placed INTEGER DEFAULT 0,
                fills INTEGER DEFAULT 0,
                total_pnl REAL DEFAULT 0.0,
                uptime_secs INTEGER DEFAULT 0,
                last_reference_price REAL,
                created_at REAL NOT NULL,
                started_at REAL,
                stopped_at REAL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS mm_clusters (
                session_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                mid_price REAL NOT NULL,
                buy_order_id TEXT,
                buy_price REAL NOT NULL,
                buy_quantity REAL NOT NULL,
                buy_filled REAL DEFAULT 0.0,
                buy_status TEXT NOT NULL,
                sell_order_id TEXT,
                sell_price REAL NOT NULL,
                sell_quantity REAL NOT NULL,
                sell_filled REAL DEFAULT 0.0,
                sell_status TEXT NOT NULL,
                created_at REAL NOT NULL,
                last_checked REAL,
                PRIMARY KEY (session_id, sequence)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS mm_orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                exchange_order_id TEXT NOT NULL,
                side TEXT NOT NULL,
                price REAL NOT NULL,
                quantity REAL NOT NULL,
                level INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL
            );
            """,
            "CREATE INDEX IF NOT EXISTS idx_mm_sessions_status ON mm_sessions (status);",
            "CREATE INDEX IF NOT EXISTS idx_mm_orders_session ON mm_orders (session_id, status);",
        ]
        for schema in schemas:
            await self._db.execute(schema)
        await self._db.commit()

    # ── Query helpers ──

    async def _execute(self, query: str, params: tuple = ()) -> int:
        """Run one write and commit. Raises PersistenceError."""
        if self._db is None:
            raise PersistenceError("Session store is not connected")
        try:
            async with self._lock:
                async with self._db.execute(query, params) as cursor:
                    await self._db.commit()
                    return cursor.lastrowid
        except aiosqlite.Error as e:
            raise PersistenceError(f"{query.strip().splitlines()[0]}: {e}") from e

    async def _fetch(self, query: str, params: tuple = ()) -> List[aiosqlite.Row]:
        if self._db is None:
            raise PersistenceError("Session store is not connected")
        try:
            async with self._db.execute(query, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise PersistenceError(f"{query.strip().splitlines()[0]}: {e}") from e

    # ─────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────

    async def create_session(self, session: Session):
        cfg = session.config
        await self._execute(
            """
            INSERT INTO mm_sessions (session_id, user_id, exchange, symbol, strategy,
                reference_source, config_json, status, error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (session.session_id, session.user_id, cfg.exchange, cfg.symbol, cfg.strategy.value,
             cfg.reference_source.value, json.dumps(cfg.to_dict()), session.status.value,
             session.error_message, session.created_at),
        )

    async def update_session(self, session: Session):
        """Write the session's mutable status, counters and timestamps."""
        assignments = ", ".join(f"{col} = ?" for col in SESSION_COLUMNS)
        await self._execute(
            f"UPDATE mm_sessions SET {assignments} WHERE session_id = ?",
            (session.status.value, session.error_message, session.clusters_placed,
             session.orders_placed, session.fills, session.total_pnl, session.uptime_secs,
             session.last_reference_price, session.started_at, session.stopped_at,
             session.session_id),
        )

    async def get_session(self, session_id: str) -> Optional[Session]:
        rows = await self._fetch("SELECT * FROM mm_sessions WHERE session_id = ?", (session_id,))
        return self._row_to_session(rows[0]) if rows else None

    async def list_sessions(self, user_id: str = None) -> List[Session]:
        if user_id is None:
            rows = await self._fetch("SELECT * FROM mm_sessions ORDER BY created_at DESC")
        else:
            rows = await self._fetch(
                "SELECT * FROM mm_sessions WHERE user_id = ? ORDER BY created_at DESC", (user_id,))
        return [self._row_to_session(r) for r in rows]

    async def list_sessions_by_status(self, *statuses: SessionStatus) -> List[Session]:
        if not statuses:
            return []
        marks = ", ".join("?" for _ in statuses)
        rows = await self._fetch(
            f"SELECT * FROM mm_sessions WHERE status IN ({marks}) ORDER BY created_at",
            tuple(s.value for s in statuses),
        )
        return [self._row_to_session(r) for r in rows]

    @staticmethod
    def _row_to_session(row) -> Session:
        return Session(
            session_id=row["session_id"],
            user_id=row["user_id"],
            config=SessionConfig.from_dict(json.loads(row["config_json"])),
            status=SessionStatus(row["status"]),
            error_message=row["error_message"],
            clusters_placed=row["clusters_placed"] or 0,
            orders_placed=row["orders_placed"] or 0,
            fills=row["fills"] or 0,
            total_pnl=row["total_pnl"] or 0.0,
            uptime_secs=row["uptime_secs"] or 0,
            last_reference_price=row["last_reference_price"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            stopped_at=row["stopped_at"],
        )

    # ─────────────────────────────────────────────
    # Clusters
    # ─────────────────────────────────────────────

    async def insert_cluster(self, session_id: str, cluster: Cluster):
        b, s = cluster.buy, cluster.sell
        await self._execute(
            """
            INSERT INTO mm_clusters (session_id, sequence, mid_price,
                buy_order_id, buy_price, buy_quantity, buy_filled, buy_status,
                sell_order_id, sell_price, sell_quantity, sell_filled, sell_status,
                created_at, last_checked)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (session_id, cluster.sequence, cluster.mid_price,
             b.order_id, b.price, b.quantity, b.filled, b.status.value,
             s.order_id, s.price, s.quantity, s.filled, s.status.value,
             cluster.created_at, cluster.last_checked),
        )

    async def update_cluster(self, session_id: str, cluster: Cluster):
        """Rewrite both legs of the cluster identified by (session_id, sequence)."""
        b, s = cluster.buy, cluster.sell
        await self._execute(
            """
            UPDATE mm_clusters SET
                buy_order_id = ?, buy_filled = ?, buy_status = ?,
                sell_order_id = ?, sell_filled = ?, sell_status = ?,
                last_checked = ?
            WHERE session_id = ? AND sequence = ?
            """,
            (b.order_id, b.filled, b.status.value,
             s.order_id, s.filled, s.status.value,
             cluster.last_checked, session_id, cluster.sequence),
        )

    async def list_clusters(self, session_id: str) -> List[Cluster]:
        rows = await self._fetch(
            "SELECT * FROM mm_clusters WHERE session_id = ? ORDER BY sequence", (session_id,))
        return [self._row_to_cluster(r) for r in rows]

    async def latest_cluster(self, session_id: str) -> Optional[Cluster]:
        rows = await self._fetch(
            "SELECT * FROM mm_clusters WHERE session_id = ? ORDER BY sequence DESC LIMIT 1",
            (session_id,),
        )
        return self._row_to_cluster(rows[0]) if rows else None

    @staticmethod
    def _row_to_cluster(row) -> Cluster:
        def leg(prefix: str, side: OrderSide) -> LiveOrder:
            return LiveOrder(
                order_id=row[f"{prefix}_order_id"],
                side=side,
                price=row[f"{prefix}_price"],
                quantity=row[f"{prefix}_quantity"],
                filled=row[f"{prefix}_filled"] or 0.0,
                status=OrderStatus(row[f"{prefix}_status"]),
            )

        return Cluster(
            sequence=row["sequence"],
            mid_price=row["mid_price"],
            buy=leg("buy", OrderSide.BUY),
            sell=leg("sell", OrderSide.SELL),
            created_at=row["created_at"],
            last_checked=row["last_checked"] or 0.0,
        )

    # ─────────────────────────────────────────────
    # Ladder orders
    # ─────────────────────────────────────────────

    async def insert_order(self, session_id: str, order: LiveOrder) -> int:
        return await self._execute(
            """
            INSERT INTO mm_orders (session_id, exchange_order_id, side, price, quantity,
                level, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (session_id, order.order_id, order.side.value, order.price, order.quantity,
             order.level, order.status.value, order.placed_at or time.time()),
        )

    async def update_order_status(self, session_id: str, order_id: str, status: OrderStatus):
        await self._execute(
            "UPDATE mm_orders SET status = ?, updated_at = ? "
            "WHERE session_id = ? AND exchange_order_id = ?",
            (status.value, time.time(), session_id, order_id),
        )

    async def list_orders(self, session_id: str, status: OrderStatus = None) -> List[LiveOrder]:
        if status is None:
            rows = await self._fetch(
                "SELECT * FROM mm_orders WHERE session_id = ? ORDER BY id", (session_id,))
        else:
            rows = await self._fetch(
                "SELECT * FROM mm_orders WHERE session_id = ? AND status = ? ORDER BY id",
                (session_id, status.value),
            )
        return [
            LiveOrder(
                order_id=r["exchange_order_id"],
                side=OrderSide(r["side"]),
                price=r["price"],
                quantity=r["quantity"],
                level=r["level"],
                status=OrderStatus(r["status"]),
                placed_at=r["created_at"],
            )
            for r in rows
        ]
