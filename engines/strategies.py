"""
MMDesk — Placement Strategies
==============================
What orders a session keeps on the book, and how it reacts to fills.

ClusterStrategy — one buy + one sell at mid·(1 ∓ s), capital split 50/50 by notional.
  Fills on EXCHANGE-priced sessions are relisted in the same tick and the
  cluster is re-centred every cluster_refresh_secs. Fills on EXTERNAL-priced
  sessions are relisted after a cooldown that restarts on every new fill.

LadderStrategy — N/2 rungs per side at mid ± s·mid·(i/n), size base·(1 + i/n).
  One cycle every refresh_interval_secs: drop filled rungs, re-centre the
  whole ladder if the reference moved past the threshold, top up the gaps.

Strategies run only inside the engine lock and talk to the outside world
through the engine they are attached to (gateway, oracle, store, timer).
"""

import asyncio
import time
import logging
from typing import Dict, List, Optional

from .errors import ExchangeRejected, TransientFetchError
from .models import (
    Cluster,
    Fill,
    LiveOrder,
    OrderIntent,
    OrderSide,
    OrderStatus,
    ReferenceSource,
    Session,
    StrategyKind,
    round_amount,
)

logger = logging.getLogger("mmdesk.strategy")


def detect_fills(tracked: List[LiveOrder], open_orders: List[Dict]) -> List[Fill]:
    """Diff tracked legs against the exchange's open orders.

    Absent id → leg FILLED (remaining quantity). Present with a larger filled
    amount → partial fill, leg stays OPEN. Filled quantities only grow.
    """
    live = {str(o["id"]): o for o in open_orders}
    fills = []
    for order in tracked:
        if not order.is_open or order.order_id is None:
            continue
        seen = live.get(order.order_id)
        if seen is None:
            qty = order.quantity - order.filled
            order.filled = order.quantity
            order.status = OrderStatus.FILLED
            fills.append(Fill(order, qty, complete=True))
        elif float(seen.get("filled") or 0) > order.filled:
            reported = min(float(seen["filled"]), order.quantity)
            fills.append(Fill(order, reported - order.filled, complete=False))
            order.filled = reported
    return fills


class PlacementStrategy:
    """Shared placement plumbing. Subclasses decide the order set and the cadence."""

    kind: StrategyKind = None

    def __init__(self, session: Session, config):
        self.session = session
        self.config = config
        self.engine = None

    def attach(self, engine):
        self.engine = engine

    @property
    def symbol(self) -> str:
        return self.session.config.symbol

    @property
    def tag(self) -> str:
        return f"[{self.session.short_id}]"

    # Loop cadence. None disables the loop.
    @property
    def tick_interval(self) -> Optional[float]:
        return None

    @property
    def refresh_interval(self) -> Optional[float]:
        return None

    # ── Interface ──

    def compute_order_set(self, reference_price: float) -> List[OrderIntent]:
        raise NotImplementedError

    async def open(self, reference_price: float):
        raise NotImplementedError

    async def on_tick(self):
        pass

    async def on_refresh(self):
        pass

    async def cancel_all(self) -> int:
        raise NotImplementedError

    def snapshot(self) -> Dict:
        raise NotImplementedError

    async def stale_order_ids(self) -> List[str]:
        """Order ids a previous process left resting, according to the store."""
        raise NotImplementedError

    async def _retire_stale(self):
        pass

    async def cancel_stale(self) -> int:
        """Cancel whatever a previous run left on the book and retire it in the store."""
        ids = await self.stale_order_ids()
        cancelled = 0
        for order_id in ids:
            if await self._cancel_id(order_id):
                cancelled += 1
        await self._retire_stale()
        if ids:
            logger.info(f"{self.tag} cancelled {cancelled}/{len(ids)} stale order(s) from previous run")
        return cancelled

    # ── Order helpers ──

    async def _place(self, leg: LiveOrder):
        """Submit one leg in place. Raises ExchangeRejected / TransientFetchError."""
        leg.price = round_amount(leg.price)
        leg.quantity = round_amount(leg.quantity)
        order = await self.engine.gateway.place_limit_order(
            self.symbol, leg.side.value, leg.quantity, leg.price)
        leg.order_id = str(order["id"])
        leg.status = OrderStatus.OPEN
        leg.filled = 0.0
        leg.placed_at = time.time()
        self.session.orders_placed += 1
        logger.info(f"{self.tag} {leg.side.value.upper()} L{leg.level} {leg.quantity} "
                    f"{self.symbol} @ {leg.price} → {leg.order_id}")

    async def _place_batch(self, legs: List[LiveOrder], pause: float = 0.0) -> bool:
        """Place legs in order. The first failure aborts the rest of the batch."""
        for i, leg in enumerate(legs):
            if i and pause:
                await asyncio.sleep(pause)
            try:
                await self._place(leg)
            except (ExchangeRejected, TransientFetchError) as e:
                self.engine.note_error(f"{leg.side.value} @ {leg.price} not placed: {e}")
                return False
        return True

    async def _cancel_id(self, order_id: str) -> bool:
        try:
            return await self.engine.gateway.cancel_order(order_id, self.symbol)
        except (ExchangeRejected, TransientFetchError) as e:
            logger.warning(f"{self.tag} cancel {order_id} failed: {e}")
            return False

    async def _cancel(self, leg: LiveOrder) -> bool:
        """Best-effort cancel of an open leg. Marks it CANCELLED when it succeeds."""
        if leg.order_id is None or not leg.is_open:
            return True
        if await self._cancel_id(leg.order_id):
            leg.status = OrderStatus.CANCELLED
            return True
        return False


# ─────────────────────────────────────────────
# Paired clusters
# ─────────────────────────────────────────────

class ClusterStrategy(PlacementStrategy):

    kind = StrategyKind.CLUSTER

    def __init__(self, session: Session, config):
        super().__init__(session, config)
        self.cluster: Optional[Cluster] = None
        self._sequence = 0
        self._stale: Optional[Cluster] = None

    @property
    def immediate(self) -> bool:
        return self.session.config.reference_source is ReferenceSource.EXCHANGE

    @property
    def tick_interval(self) -> Optional[float]:
        return self.config.fill_check_secs

    @property
    def refresh_interval(self) -> Optional[float]:
        return self.config.cluster_refresh_secs if self.immediate else None

    def compute_order_set(self, reference_price: float) -> List[OrderIntent]:
        cfg = self.session.config
        s = cfg.spread_fraction
        buy_price = round_amount(reference_price * (1 - s))
        sell_price = round_amount(reference_price * (1 + s))
        half = cfg.total_amount / 2
        return [
            OrderIntent(OrderSide.BUY, buy_price, round_amount(half / buy_price)),
            OrderIntent(OrderSide.SELL, sell_price, round_amount(half / sell_price)),
        ]

    async def open(self, reference_price: float):
        buy, sell = self.compute_order_set(reference_price)
        self._sequence += 1
        cluster = Cluster(
            sequence=self._sequence,
            mid_price=reference_price,
            buy=LiveOrder.unplaced(buy),
            sell=LiveOrder.unplaced(sell),
        )
        self.cluster = cluster
        self.session.last_reference_price = reference_price

        await self._place_batch(cluster.legs, pause=self.config.leg_pause_secs)
        self.session.clusters_placed += 1
        logger.info(f"{self.tag} cluster #{cluster.sequence} @ mid {reference_price}: "
                    f"buy {cluster.buy.price} / sell {cluster.sell.price}")
        await self.engine.persist("insert_cluster", self.engine.store.insert_cluster(
            self.session.session_id, cluster))

    async def on_tick(self):
        if self.cluster is None:
            ref = await self.engine.oracle.get_reference_price()
            if ref is not None:
                await self.open(ref)
            return

        cluster = self.cluster
        open_orders = await self.engine.gateway.fetch_open_orders(self.symbol)
        cluster.last_checked = time.time()
        fills = detect_fills(cluster.legs, open_orders)
        for fill in fills:
            self.engine.record_fill(fill)

        changed = bool(fills)
        legs = []
        for fill in fills:
            if not any(fill.order is leg for leg in legs):
                legs.append(fill.order)
        if self.immediate:
            # partially filled legs whose remainder could not be cancelled last tick
            for leg in cluster.legs:
                if leg.is_open and leg.filled > 0 and not any(leg is other for other in legs):
                    legs.append(leg)
            if legs:
                await self._relist(legs)
                changed = True
        elif legs:
            self.engine.schedule_replacement(legs)

        # legs whose placement was rejected earlier
        unplaced = [leg for leg in cluster.legs if leg.order_id is None and leg.is_open]
        if unplaced:
            await self._place_batch(unplaced, pause=self.config.leg_pause_secs)
            changed = True

        if changed:
            await self._save()

    async def replace_legs(self, legs: List[LiveOrder]):
        """Delayed replacement batch (runs under the engine lock)."""
        held = await self._relist(legs)
        if held:
            self.engine.schedule_replacement(held)
        await self._save()

    async def _relist(self, legs: List[LiveOrder]) -> List[LiveOrder]:
        """Put each filled leg back at its own price and quantity.

        Returns the partially filled legs that were held back because their
        remainder could not be cancelled.
        """
        cluster = self.cluster
        fresh, held = [], []
        for leg in legs:
            slot = "buy" if leg.side is OrderSide.BUY else "sell"
            if cluster is None or getattr(cluster, slot) is not leg:
                continue  # superseded by a refresh
            if leg.is_open and leg.order_id is not None:
                # partially filled; pull the remainder first
                if not await self._cancel(leg):
                    logger.warning(f"{self.tag} remainder of {leg.order_id} still resting, relist deferred")
                    held.append(leg)
                    continue
            new_leg = LiveOrder(order_id=None, side=leg.side, price=leg.price,
                                quantity=leg.quantity, level=leg.level)
            setattr(cluster, slot, new_leg)
            fresh.append(new_leg)

        if fresh:
            await self._place_batch(fresh, pause=self.config.leg_pause_secs)
            logger.info(f"{self.tag} relisted {len(fresh)} leg(s) in cluster #{cluster.sequence}")
        return held

    async def on_refresh(self):
        """Re-centre: cancel both legs and open the next cluster at a fresh mid."""
        ref = await self.engine.oracle.get_reference_price()
        if ref is None:
            logger.warning(f"{self.tag} refresh skipped: no reference price")
            return

        if self.cluster is not None:
            for leg in self.cluster.legs:
                await self._cancel(leg)
                if leg.order_id is None:
                    leg.status = OrderStatus.CANCELLED
            await self._save()
        await self.open(ref)

    async def cancel_all(self) -> int:
        if self.cluster is None:
            return 0
        cancelled = 0
        for leg in self.cluster.legs:
            was_open = leg.is_open and leg.order_id is not None
            if await self._cancel(leg) and was_open:
                cancelled += 1
        await self._save()
        return cancelled

    async def _save(self):
        if self.cluster is not None:
            await self.engine.persist("update_cluster", self.engine.store.update_cluster(
                self.session.session_id, self.cluster))

    async def stale_order_ids(self) -> List[str]:
        latest = await self.engine.store.latest_cluster(self.session.session_id)
        self._stale = latest
        if latest is None:
            return []
        # continue numbering after the last persisted cluster
        self._sequence = max(self._sequence, latest.sequence)
        return [leg.order_id for leg in latest.legs if leg.is_open and leg.order_id]

    async def _retire_stale(self):
        if self._stale is None:
            return
        for leg in self._stale.legs:
            if leg.is_open:
                leg.status = OrderStatus.CANCELLED
        await self.engine.persist("update_cluster", self.engine.store.update_cluster(
            self.session.session_id, self._stale))
        self._stale = None

    def snapshot(self) -> Dict:
        return {
            "strategy": self.kind.value,
            "policy": "IMMEDIATE" if self.immediate else "DELAYED",
            "cluster": self.cluster.to_dict() if self.cluster else None,
        }


# ─────────────────────────────────────────────
# Multi-level ladder
# ─────────────────────────────────────────────

class LadderStrategy(PlacementStrategy):

    kind = StrategyKind.LADDER

    def __init__(self, session: Session, config):
        super().__init__(session, config)
        self.orders: List[LiveOrder] = []
        self.anchor_price: Optional[float] = None

    @property
    def refresh_interval(self) -> Optional[float]:
        return self.session.config.refresh_interval_secs

    def compute_order_set(self, reference_price: float) -> List[OrderIntent]:
        cfg = self.session.config
        n = cfg.order_count // 2
        s = cfg.spread_fraction
        buys, sells = [], []
        for i in range(1, n + 1):
            offset = reference_price * s * (i / n)
            size = round_amount(cfg.base_order_size * (1 + i / n))
            buys.append(OrderIntent(OrderSide.BUY, round_amount(reference_price - offset), size, i))
            sells.append(OrderIntent(OrderSide.SELL, round_amount(reference_price + offset), size, i))
        return buys + sells

    async def open(self, reference_price: float):
        self.anchor_price = reference_price
        self.session.last_reference_price = reference_price
        placed = await self._fill_slots(self.compute_order_set(reference_price))
        logger.info(f"{self.tag} ladder @ mid {reference_price}: {placed} rung(s) placed")

    async def _fill_slots(self, intents: List[OrderIntent]) -> int:
        placed = 0
        for i, intent in enumerate(intents):
            if i:
                await asyncio.sleep(self.config.ladder_pause_secs)
            leg = LiveOrder.unplaced(intent)
            try:
                await self._place(leg)
            except (ExchangeRejected, TransientFetchError) as e:
                self.engine.note_error(f"L{intent.level} {intent.side.value} @ {intent.price} not placed: {e}")
                break
            self.orders.append(leg)
            placed += 1
            await self.engine.persist("insert_order", self.engine.store.insert_order(
                self.session.session_id, leg))
        return placed

    async def _reconcile(self) -> List[Fill]:
        open_orders = await self.engine.gateway.fetch_open_orders(self.symbol)
        fills = detect_fills(self.orders, open_orders)
        for fill in fills:
            self.engine.record_fill(fill)
            if fill.complete:
                await self.engine.persist("update_order_status", self.engine.store.update_order_status(
                    self.session.session_id, fill.order.order_id, OrderStatus.FILLED))
        self.orders = [o for o in self.orders if o.is_open]
        if fills:
            logger.info(f"{self.tag} {len(fills)} fill(s), {len(self.orders)} rung(s) resting")
        return fills

    async def _top_up(self, reference_price: float) -> int:
        have = {o.slot for o in self.orders}
        missing = [i for i in self.compute_order_set(reference_price) if i.slot not in have]
        if not missing:
            return 0
        return await self._fill_slots(missing)

    def moved_past_threshold(self, reference_price: float) -> bool:
        if not self.anchor_price:
            return True
        change_pct = abs(reference_price - self.anchor_price) / self.anchor_price * 100
        return change_pct > self.session.config.price_move_threshold_pct

    async def on_refresh(self):
        """One ladder cycle: reconcile, rebuild on a large move, else top up at the current mid."""
        await self._reconcile()

        ref = await self.engine.oracle.get_reference_price()
        if ref is None:
            return
        self.session.last_reference_price = ref

        if self.moved_past_threshold(ref):
            logger.info(f"{self.tag} reference moved {self.anchor_price} → {ref}, rebuilding ladder")
            await self.cancel_all()
            await self.open(ref)
            return

        await self._top_up(ref)

    async def cancel_all(self) -> int:
        cancelled = 0
        for i, leg in enumerate(self.orders):
            if i:
                await asyncio.sleep(self.config.ladder_pause_secs)
            if await self._cancel(leg):
                cancelled += 1
                await self.engine.persist("update_order_status", self.engine.store.update_order_status(
                    self.session.session_id, leg.order_id, OrderStatus.CANCELLED))
        self.orders = []
        return cancelled

    async def stale_order_ids(self) -> List[str]:
        stale = await self.engine.store.list_orders(self.session.session_id, OrderStatus.OPEN)
        return [o.order_id for o in stale]

    async def _retire_stale(self):
        for order_id in await self.stale_order_ids():
            await self.engine.persist("update_order_status", self.engine.store.update_order_status(
                self.session.session_id, order_id, OrderStatus.CANCELLED))

    def snapshot(self) -> Dict:
        return {
            "strategy": self.kind.value,
            "anchor_price": self.anchor_price,
            "open_orders": len(self.orders),
            "orders": [o.to_dict() for o in self.orders],
        }


def build_strategy(session: Session, config) -> PlacementStrategy:
    if session.config.strategy is StrategyKind.LADDER:
        return LadderStrategy(session, config)
    return ClusterStrategy(session, config)
