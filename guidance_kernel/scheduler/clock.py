"""
Clocks — the only source of time for the scheduler, watchers and content items.

SystemClock runs on real time. ManualClock only moves when told to, which
makes watcher budgets, wait delays and debounce windows deterministic.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple


class Clock(ABC):
    @abstractmethod
    def time(self) -> float:
        """Monotonic seconds."""

    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware wall-clock time."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock(Clock):
    def time(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    A clock advanced explicitly by tests and the headless host.

    Sleepers are parked on futures and released in deadline order as
    `advance` moves time forward; each release lets the woken coroutines
    run before time moves again.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        deadline = round(self._elapsed + seconds, 9)
        heapq.heappush(self._sleepers, (deadline, next(self._counter), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def settle(self, rounds: int = 20) -> None:
        """Let ready coroutines run without moving time."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline passes."""
        target = round(self._elapsed + seconds, 9)
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._elapsed = max(self._elapsed, deadline)
            if not future.done():
                future.set_result(None)
            await self.settle()
        self._elapsed = target
        await self.settle()
