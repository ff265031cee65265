"""
Scheduler — the heartbeat of the kernel.

Every tick calls `monitor()` on the live content items, at most
`max_items_per_tick` of them, continuing round-robin on the next tick when
there are more. A failing item is logged and skipped; the tick goes on.
After the items, the `after_tick` hook runs (the orchestrator uses it to
start eligible content).
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from guidance_kernel.models.config import KernelConfig
from guidance_kernel.scheduler.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class TickReport:
    """What one tick did."""

    def __init__(self, tick: int, started_at: datetime):
        self.tick = tick
        self.started_at = started_at
        self.monitored: List[str] = []
        self.failed: List[str] = []
        self.skipped = False

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "started_at": self.started_at.isoformat(),
            "monitored": self.monitored,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class Scheduler:
    def __init__(
        self,
        items: Callable[[], List[Any]],
        clock: Optional[Clock] = None,
        config: Optional[KernelConfig] = None,
        after_tick: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self._items = items
        self.clock = clock or SystemClock()
        self.config = config or KernelConfig()
        self.after_tick = after_tick

        self.tick_count = 0
        self._cursor = 0
        self._ticking = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _batch(self, items: List[Any]) -> List[Any]:
        """Next round-robin slice; the whole list in order when it fits."""
        if not items:
            self._cursor = 0
            return []
        budget = min(len(items), self.config.max_items_per_tick)
        start = self._cursor % len(items)
        self._cursor = (start + budget) % len(items)
        return [items[(start + i) % len(items)] for i in range(budget)]

    async def tick(self) -> TickReport:
        """Run one monitoring pass. A tick requested during a tick is skipped."""
        report = TickReport(self.tick_count + 1, self.clock.now())
        if self._ticking:
            logger.debug("Tick %d skipped, previous tick still running", report.tick)
            report.skipped = True
            return report

        self._ticking = True
        try:
            for item in self._batch(list(self._items())):
                name = getattr(item, "content_id", repr(item))
                try:
                    await item.monitor()
                    report.monitored.append(name)
                except Exception:
                    logger.exception("Monitoring %s failed", name)
                    report.failed.append(name)

            if self.after_tick is not None:
                try:
                    await self.after_tick()
                except Exception:
                    logger.exception("After-tick hook failed")
        finally:
            self._ticking = False
            self.tick_count += 1
        return report

    async def _wait(self, stop_event: asyncio.Event) -> None:
        """Sleep one interval on the scheduler clock, or until stopped."""
        sleeper = asyncio.ensure_future(self.clock.sleep(self.config.monitor_interval_seconds))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                if not task.done():
                    task.cancel()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick at the monitor interval until `stop_event` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await self.tick()
                await self._wait(stop_event)
        finally:
            self._running = False
