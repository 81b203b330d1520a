"""
MMDesk — Delayed Replacement Timer
===================================
At most one pending replacement per session. Each schedule() merges the new
legs into the pending batch and restarts the countdown, so the batch fires
once, `delay` seconds after the latest fill.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger("mmdesk.timers")


class ReplacementTimer:
    """Single-shot, reschedulable asyncio timer carrying a batch of items."""

    def __init__(self, callback: Callable[[List], Awaitable], name: str = ""):
        self._callback = callback
        self.name = name
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._pending: List = []
        self._fires_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_items(self) -> List:
        return list(self._pending)

    @property
    def fires_in(self) -> Optional[float]:
        if not self.pending or self._fires_at is None:
            return None
        return max(0.0, self._fires_at - time.monotonic())

    def schedule(self, items: List, delay: float):
        """Merge items into the pending batch and restart the countdown."""
        for item in items:
            if not any(item is p for p in self._pending):
                self._pending.append(item)

        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._fires_at = time.monotonic() + delay
        self._task = asyncio.ensure_future(self._run(self._generation, delay))
        logger.debug(f"[{self.name}] replacement of {len(self._pending)} leg(s) in {delay:.0f}s "
                     f"(gen {self._generation})")

    def cancel(self) -> List:
        """Drop the pending batch. Returns what was dropped."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._fires_at = None
        dropped, self._pending = self._pending, []
        return dropped

    async def _run(self, generation: int, delay: float):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        # superseded while asleep
        if generation != self._generation:
            return

        items, self._pending = self._pending, []
        self._task = None
        self._fires_at = None
        try:
            await self._callback(items)
        except Exception as e:
            logger.error(f"[{self.name}] replacement callback error: {e}", exc_info=True)
