"""
MMDesk — Inventory & Realized PnL
==================================
Average-entry position tracking for one session's symbol. Every detected
fill (full or partial) is recorded here; the realized delta feeds the
session's total_pnl.
"""

import time
import logging
from dataclasses import dataclass
from typing import Dict

from .models import OrderSide

logger = logging.getLogger("mmdesk.inventory")


@dataclass
class Position:
    """Net base-asset position for one symbol."""
    symbol: str
    net_position: float = 0.0        # positive = long base, negative = short base
    avg_entry: float = 0.0
    realized_pnl: float = 0.0
    total_bought: float = 0.0        # quote notional
    total_sold: float = 0.0
    n_fills: int = 0
    last_fill_at: float = 0.0


class InventoryTracker:
    """Tracks one session's position and realizes PnL against the average entry."""

    def __init__(self, symbol: str, label: str = ""):
        self.position = Position(symbol=symbol)
        self._label = label

    def record_fill(self, side: OrderSide, price: float, size: float) -> float:
        """Apply a fill. Returns the PnL it realized."""
        pos = self.position
        notional = price * size
        realized = 0.0

        if side is OrderSide.BUY:
            if pos.net_position < 0:
                # covering a short
                cover = min(size, -pos.net_position)
                realized = (pos.avg_entry - price) * cover
                pos.net_position += cover
                remaining = size - cover
                if remaining > 0:
                    pos.avg_entry = price
                    pos.net_position += remaining
            else:
                cost = pos.avg_entry * pos.net_position + notional
                pos.net_position += size
                pos.avg_entry = cost / pos.net_position
            pos.total_bought += notional
        else:
            if pos.net_position > 0:
                # selling out of a long
                sold = min(size, pos.net_position)
                realized = (price - pos.avg_entry) * sold
                pos.net_position -= sold
                remaining = size - sold
                if remaining > 0:
                    pos.avg_entry = price
                    pos.net_position -= remaining
            else:
                cost = pos.avg_entry * -pos.net_position + notional
                pos.net_position -= size
                pos.avg_entry = cost / -pos.net_position
            pos.total_sold += notional

        if abs(pos.net_position) < 1e-12:
            pos.net_position = 0.0
            pos.avg_entry = 0.0

        pos.realized_pnl += realized
        pos.n_fills += 1
        pos.last_fill_at = time.time()

        logger.info(
            f"{self._label}FILL {side.value.upper()} {size:.8g} @ {price:.8g} | "
            f"net={pos.net_position:.8g} avg={pos.avg_entry:.8g} "
            f"rpnl={pos.realized_pnl:.4f}"
        )
        return realized

    def unrealized(self, mark_price: float) -> float:
        pos = self.position
        if pos.net_position == 0:
            return 0.0
        return (mark_price - pos.avg_entry) * pos.net_position

    def get_stats(self) -> Dict:
        pos = self.position
        return {
            "net_position": round(pos.net_position, 8),
            "avg_entry": round(pos.avg_entry, 8),
            "realized_pnl": round(pos.realized_pnl, 8),
            "total_bought": round(pos.total_bought, 4),
            "total_sold": round(pos.total_sold, 4),
            "fills": pos.n_fills,
        }
