"""
Launcher — a beacon or icon attached to a page element.

A launcher watches for its target before it has a session. When the target
is found and no session exists it starts itself; with a session it simply
re-anchors. A target that never appears hides the launcher until it does.
"""

import logging
from typing import Any, Optional

from guidance_kernel.content.base import ContentItem, SessionUnavailableError
from guidance_kernel.content.validity import wait_seconds
from guidance_kernel.events.bus import WatcherEvent
from guidance_kernel.models.content import (
    BizEvents,
    ContentEndReason,
    ContentStartReason,
    ContentType,
)
from guidance_kernel.models.runtime import ContentState
from guidance_kernel.models.store import LauncherSnapshot
from guidance_kernel.watcher.element_watcher import ElementWatcher

logger = logging.getLogger(__name__)

PERFORM_ACTION = "perform-action"


class Launcher(ContentItem):
    content_type = ContentType.LAUNCHER

    def __init__(self, orchestrator: Any, content):
        super().__init__(orchestrator, content)
        self.watcher: Optional[ElementWatcher] = None
        self.is_watching = False
        self.target_missing = False
        self.activated = False
        self._seen_reported = False
        self._dismiss_scheduled = False

    def default_snapshot(self) -> LauncherSnapshot:
        return LauncherSnapshot()

    def can_auto_start(self) -> bool:
        if self.is_watching or self.target_missing:
            return False
        return super().can_auto_start()

    async def auto_start(self, reason: str = ContentStartReason.START_FROM_CONDITION) -> bool:
        """Wait the configured delay, then start watching for the target."""
        if self.is_destroyed or self.is_started or self.is_watching:
            return False
        self.reset_transient()
        generation = self._generation
        self.state = ContentState.WAITING_TO_START

        wait = wait_seconds(self.content, self.config.max_wait_seconds)
        if wait > 0:
            await self.clock.sleep(wait)
        if generation != self._generation or self.state != ContentState.WAITING_TO_START:
            return False
        return self.watch(reason)

    def watch(self, reason: Any = ContentStartReason.START_FROM_CONDITION) -> bool:
        """Begin a search campaign for the launcher's target."""
        target = self.content.launcher_data().target.element
        if target is None:
            logger.warning("Launcher %s has no target", self.content_id)
            return False
        self._release_watcher()
        watcher = ElementWatcher(
            target, self.environment, self.clock, self.config.target_missing_seconds
        )
        self.watcher = watcher
        self.is_watching = True
        self.target_missing = False
        generation = self._generation
        watcher.once(WatcherEvent.FOUND, lambda element: self._on_target_found(generation, element, reason))
        watcher.once(WatcherEvent.FOUND_TIMEOUT, lambda _: self._on_target_missing(generation))
        watcher.on(WatcherEvent.CHANGED, lambda element: self.store.update(trigger_ref=element))
        watcher.find_element()
        return True

    async def _on_target_found(self, generation: int, element: Any, reason: Any) -> None:
        if self.is_destroyed or generation != self._generation:
            return
        if self.session is not None:
            await self._present(element)
            return
        try:
            await self.start(reason)
        except SessionUnavailableError:
            logger.error("Launcher %s found its target but got no session", self.content_id)
            self._release_watcher()
            self.state = ContentState.IDLE

    async def _on_target_missing(self, generation: int) -> None:
        if self.is_destroyed or generation != self._generation:
            return
        logger.debug("Target for launcher %s is missing", self.content_id)
        self.is_watching = False
        self.target_missing = True
        if self.is_started:
            self.temporarily_hide()
        else:
            self.state = ContentState.IDLE
            self.store.update(open_state=False)

    async def show(self, step_cvid: Optional[str] = None) -> None:
        base = await self.get_store_base_info()
        if self.is_destroyed:
            return
        z_index = self.content.launcher_data().z_index
        if z_index is not None:
            base["z_index"] = z_index
        element = self.watcher.element if self.watcher is not None else None
        self.store.set_data(LauncherSnapshot(**base, trigger_ref=element, open_state=False))
        if element is None:
            if not self.is_watching:
                self.watch(self.start_reason)
            return
        await self._present(element)

    async def _present(self, element: Any) -> None:
        self.store.update(trigger_ref=element)
        if self.is_hide_satisfied():
            self.temporarily_hide()
        else:
            self.ensure_visible()
        if not self._seen_reported:
            self._seen_reported = True
            await self.report_event(BizEvents.LAUNCHER_SEEN)

    async def monitor(self) -> None:
        if self.target_missing and not self.is_destroyed and self.environment.has_container():
            target = self.content.launcher_data().target.element
            if target is not None and self.environment.find_target(target) is not None:
                self.target_missing = False
                if self.is_started:
                    self.watch(self.start_reason)
        await super().monitor()

    async def monitor_started(self) -> None:
        if self.watcher is None or self.watcher.element is None:
            return
        if self.is_hide_satisfied():
            self.temporarily_hide()
            return
        visibility = await self.watcher.check_visibility()
        if self.is_destroyed:
            return
        if visibility.is_hidden:
            self.temporarily_hide()
        else:
            self.store.update(trigger_ref=self.watcher.element)
            self.ensure_visible()

    async def activate(self) -> bool:
        """The user clicked or hovered the launcher."""
        if not self.is_started or self.is_destroyed:
            return False
        self.activated = True
        await self.report_event(BizEvents.LAUNCHER_ACTIVATED)
        data = self.content.launcher_data()
        if data.behavior.action_type == PERFORM_ACTION and data.behavior.actions:
            await self.orchestrator.dispatcher.execute(data.behavior.actions, self)
        if data.tooltip.settings.dismiss_after_first_activation and not self._dismiss_scheduled:
            self._dismiss_scheduled = True
            self.schedule(self._dismiss_later())
        return True

    async def _dismiss_later(self) -> None:
        await self.clock.sleep(self.config.launcher_dismiss_delay_seconds)
        if not self.is_destroyed:
            await self.close(ContentEndReason.LAUNCHER_DEACTIVATED)

    def _release_watcher(self) -> None:
        if self.watcher is not None:
            self.watcher.destroy()
            self.watcher = None
        self.is_watching = False

    def teardown(self) -> None:
        self._release_watcher()
