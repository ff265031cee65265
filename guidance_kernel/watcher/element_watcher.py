"""
Element Watcher — finds a step or launcher target and tracks its visibility.

Two failure classes, two budgets:
  acquisition  — `find_element` retries every 200 ms, at most 30 attempts and at
                 most `target_missing_seconds`; the first bound reached fires FOUND_TIMEOUT.
                 Every campaign looks at least once, even with a zero budget
  steady state — `check_visibility` tracks how long a found element has been
                 hidden; hidden for `target_missing_seconds` sets `is_timeout`

A campaign fires FOUND or FOUND_TIMEOUT, never both, and each at most once.
"""

import asyncio
import logging
from typing import Any, Callable, NamedTuple, Optional

from guidance_kernel.environment.base import Environment
from guidance_kernel.events.bus import EventBus, WatcherEvent
from guidance_kernel.models.conditions import ElementSelector
from guidance_kernel.models.runtime import WatcherState
from guidance_kernel.scheduler.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

RETRY_LIMIT = 30
RETRY_DELAY_MS = 200
DEFAULT_TARGET_MISSING_SECONDS = 6


class Visibility(NamedTuple):
    is_hidden: bool
    is_timeout: bool


class ElementWatcher:
    def __init__(
        self,
        target: ElementSelector,
        environment: Environment,
        clock: Optional[Clock] = None,
        target_missing_seconds: float = DEFAULT_TARGET_MISSING_SECONDS,
    ):
        self.target = target
        self.environment = environment
        self.clock = clock or SystemClock()
        self.target_missing_seconds = target_missing_seconds

        self._bus = EventBus()
        self._element: Any = None
        self._retry_count = 0
        self._hidden_since: Optional[float] = None
        self._is_timeout = False
        self._task: Optional[asyncio.Task] = None
        self._campaign = 0
        self._destroyed = False

    # --- Subscriptions ---

    def on(self, event: WatcherEvent, handler: Callable) -> Callable[[], None]:
        return self._bus.on(event, handler)

    def once(self, event: WatcherEvent, handler: Callable) -> Callable[[], None]:
        return self._bus.once(event, handler)

    def off(self, event: WatcherEvent, handler: Callable = None) -> None:
        self._bus.off(event, handler)

    def _trigger(self, event: WatcherEvent, payload: Any = None) -> None:
        if self._destroyed:
            return
        self._bus.trigger(event, payload)

    # --- State ---

    @property
    def element(self) -> Any:
        return self._element

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def is_searching(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> WatcherState:
        return WatcherState(
            element=self._element,
            retry_count=self._retry_count,
            hidden_since=self._hidden_since,
            is_timeout=self._is_timeout,
        )

    def set_target_missing_seconds(self, seconds: float) -> None:
        self.target_missing_seconds = seconds

    # --- Acquisition ---

    def find_element(self, attempt: int = 0) -> None:
        """Start a new search campaign, cancelling any campaign in flight."""
        if self._destroyed:
            return
        self._cancel_search()
        self._campaign += 1
        self._task = asyncio.get_running_loop().create_task(
            self._search(self._campaign, attempt)
        )

    def _timed_out(self, attempt: int) -> bool:
        budget_ms = self.target_missing_seconds * 1000
        return attempt >= RETRY_LIMIT or attempt * RETRY_DELAY_MS >= budget_ms

    async def _search(self, campaign: int, attempt: int) -> None:
        while not self._destroyed and campaign == self._campaign:
            self._retry_count = attempt
            if self.environment.has_container():
                element = self.environment.find_target(self.target)
                if element is not None:
                    self._element = element
                    self._trigger(WatcherEvent.FOUND, element)
                    return

            if self._timed_out(attempt):
                logger.debug("Target %s not found after %d attempts", self._describe(), attempt)
                self._trigger(WatcherEvent.FOUND_TIMEOUT)
                return

            await self.clock.sleep(RETRY_DELAY_MS / 1000)
            attempt += 1

    def _cancel_search(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    # --- Steady state ---

    async def check_visibility(self) -> Visibility:
        """Observe the found element once; call every scheduler tick."""
        if self._element is None or self._destroyed:
            return Visibility(is_hidden=True, is_timeout=False)

        if not self.environment.contains(self._element):
            replacement = self.environment.find_target(self.target)
            if replacement is not None and replacement is not self._element:
                self._element = replacement
                self._trigger(WatcherEvent.CHANGED, replacement)

        visible = self.environment.contains(self._element) and await self.environment.is_visible(
            self._element
        )
        if visible:
            self._hidden_since = None
            self._is_timeout = False
            return Visibility(is_hidden=False, is_timeout=False)

        now = self.clock.time()
        if self._hidden_since is None:
            self._hidden_since = now
        self._is_timeout = now - self._hidden_since >= self.target_missing_seconds
        return Visibility(is_hidden=True, is_timeout=self._is_timeout)

    # --- Teardown ---

    def reset(self) -> None:
        self._cancel_search()
        self._element = None
        self._hidden_since = None
        self._is_timeout = False
        self._retry_count = 0

    def destroy(self) -> None:
        """Stop searching and silence every subscriber. Safe to call repeatedly."""
        if self._destroyed:
            return
        self.reset()
        self._destroyed = True
        self._bus.off_all()

    def _describe(self) -> str:
        return self.target.custom_selector or ",".join(self.target.selectors_list) or "<target>"
