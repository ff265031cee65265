"""
Tour — an ordered sequence of steps, each a modal, a tooltip anchored to a
page element, or a hidden step that only runs triggers.

Tooltip steps own an ElementWatcher. A target that never appears closes
the tour with TOOLTIP_TARGET_MISSING and hands the slot to the next tour.
Step triggers fire at most once per entry into their step.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from guidance_kernel.content.base import ContentItem
from guidance_kernel.events.bus import ContentEvent, WatcherEvent
from guidance_kernel.models.content import (
    BizEvents,
    ContentEndReason,
    ContentType,
    Step,
    StepTrigger,
    StepType,
)
from guidance_kernel.models.runtime import ContentState
from guidance_kernel.models.store import TourSnapshot
from guidance_kernel.watcher.element_watcher import ElementWatcher

logger = logging.getLogger(__name__)


class Tour(ContentItem):
    content_type = ContentType.FLOW

    def __init__(self, orchestrator: Any, content):
        super().__init__(orchestrator, content)
        self.current_step: Optional[Step] = None
        self.watcher: Optional[ElementWatcher] = None
        self._pending_triggers: List[StepTrigger] = []
        self._step_generation = 0

    def default_snapshot(self) -> TourSnapshot:
        return TourSnapshot()

    @property
    def progress(self) -> float:
        if self.current_step is None or not self.content.steps:
            return 0
        index = self.content.step_index(self.current_step.cvid)
        return (index + 1) / len(self.content.steps) * 100

    async def show(self, step_cvid: Optional[str] = None) -> None:
        cvid = step_cvid or self._resume_cvid()
        if cvid is None and self.content.steps:
            cvid = self.content.steps[0].cvid
        await self.goto(cvid)

    def _resume_cvid(self) -> Optional[str]:
        """The last step seen in a continued session, if it still exists."""
        if self.session is None:
            return None
        seen = self.session.latest_event(BizEvents.FLOW_STEP_SEEN.value)
        if seen is None:
            return None
        cvid = seen.data.get("flow_step_cvid")
        if self.content.step_by_cvid(cvid) is None:
            return None
        return cvid

    async def goto(self, step_cvid: Optional[str]) -> None:
        """Move to a step by cvid. Unknown steps end the tour."""
        if self.is_destroyed or not self.is_started:
            return
        if not self.content.steps:
            await self.close(ContentEndReason.CONTENT_NOT_FOUND)
            return
        step = self.content.step_by_cvid(step_cvid)
        if step is None:
            logger.warning("Step %s not found in tour %s", step_cvid, self.content_id)
            await self.close(ContentEndReason.STEP_NOT_FOUND)
            return

        self._release_watcher()
        self._step_generation += 1
        generation = self._step_generation
        self.current_step = step
        self._pending_triggers = list(step.trigger)

        index = self.content.step_index(step.cvid)
        total = len(self.content.steps)
        progress = (index + 1) / total * 100
        base = await self.get_store_base_info(step.theme_id)
        if self.is_destroyed or generation != self._step_generation:
            return

        if step.type == StepType.TOOLTIP and step.target is not None:
            self.show_popper(step, progress, base)
        elif step.type == StepType.HIDDEN:
            self.show_hidden(step, progress, base)
        else:
            self.show_modal(step, progress, base)
        self.bus.trigger(ContentEvent.STEP_CHANGED, step)

        await self.report_event(BizEvents.FLOW_STEP_SEEN, self._step_data(step, index, progress))
        if index == total - 1 and not self.is_destroyed:
            await self.report_event(BizEvents.FLOW_COMPLETED, self._step_data(step, index, progress))

    def _step_data(self, step: Step, index: int, progress: float) -> Dict[str, Any]:
        return {
            "flow_step_number": index,
            "flow_step_cvid": step.cvid,
            "flow_step_name": step.name,
            "flow_step_progress": progress,
        }

    # --- Presentation ---

    def show_popper(self, step: Step, progress: float, base: Dict[str, Any]) -> None:
        """Anchor the step to its target; stays closed until the watcher finds it."""
        watcher = ElementWatcher(
            step.target,
            self.environment,
            self.clock,
            self.config.target_missing_seconds,
        )
        self.watcher = watcher
        generation = self._step_generation
        watcher.once(WatcherEvent.FOUND, lambda element: self._on_target_found(generation, element))
        watcher.once(WatcherEvent.FOUND_TIMEOUT, lambda _: self._on_target_missing(generation))
        watcher.on(WatcherEvent.CHANGED, lambda element: self.store.update(trigger_ref=element))

        self.store.set_data(
            TourSnapshot(**base, current_step=step, progress=progress, open_state=False)
        )
        self.state = ContentState.STARTED
        watcher.find_element()

    def show_modal(self, step: Step, progress: float, base: Dict[str, Any]) -> None:
        hidden = self.is_hide_satisfied()
        self.store.set_data(
            TourSnapshot(**base, current_step=step, progress=progress, open_state=not hidden)
        )
        if hidden:
            self.temporarily_hide()
        else:
            self.ensure_visible()

    def show_hidden(self, step: Step, progress: float, base: Dict[str, Any]) -> None:
        self.store.set_data(
            TourSnapshot(**base, current_step=step, progress=progress, open_state=False)
        )
        self.ensure_visible(open_state=False)

    def _on_target_found(self, generation: int, element: Any) -> None:
        if self.is_destroyed or generation != self._step_generation:
            return
        self.environment.scroll_into_view(element)
        self.store.update(trigger_ref=element)
        if self.is_hide_satisfied():
            self.temporarily_hide()
        else:
            self.ensure_visible()

    async def _on_target_missing(self, generation: int) -> None:
        if self.is_destroyed or generation != self._step_generation:
            return
        step = self.current_step
        logger.info("Target for step %s of tour %s is missing", step.cvid, self.content_id)
        index = self.content.step_index(step.cvid)
        await self.report_event(
            BizEvents.TOOLTIP_TARGET_MISSING, self._step_data(step, index, self.progress)
        )
        if self.is_destroyed or generation != self._step_generation:
            return
        await self.close(ContentEndReason.TOOLTIP_TARGET_MISSING)
        await self.orchestrator.start_tour()

    # --- Monitoring ---

    async def monitor_started(self) -> None:
        step = self.current_step
        if step is None:
            return
        if self.is_hide_satisfied():
            self.temporarily_hide()
        elif self.watcher is not None:
            if self.watcher.element is not None:
                visibility = await self.watcher.check_visibility()
                if self.is_destroyed:
                    return
                if visibility.is_timeout:
                    await self._on_target_missing(self._step_generation)
                    return
                if visibility.is_hidden:
                    self.temporarily_hide()
                else:
                    self.store.update(trigger_ref=self.watcher.element)
                    self.ensure_visible()
        else:
            self.ensure_visible(open_state=step.type != StepType.HIDDEN)
        await self.run_triggers()

    async def run_triggers(self) -> None:
        """Fire the current step's triggers whose conditions now hold."""
        if not self._pending_triggers or self.is_destroyed:
            return
        generation = self._step_generation
        pending = list(self._pending_triggers)
        results = await asyncio.gather(*(self.rules.check(t.conditions) for t in pending))
        if self.is_destroyed or generation != self._step_generation:
            return

        fired = [t for t, ok in zip(pending, results) if ok]
        self._pending_triggers = [
            t for t in self._pending_triggers if not any(t is f for f in fired)
        ]
        for trigger in fired:
            if self.is_destroyed or generation != self._step_generation:
                return
            if trigger.wait:
                self.schedule(self._run_trigger_later(trigger, generation))
            else:
                await self.orchestrator.dispatcher.execute(trigger.actions, self)

    async def _run_trigger_later(self, trigger: StepTrigger, generation: int) -> None:
        await self.clock.sleep(min(trigger.wait, self.config.max_wait_seconds))
        if self.is_destroyed or generation != self._step_generation:
            return
        await self.orchestrator.dispatcher.execute(trigger.actions, self)

    @property
    def pending_triggers(self) -> List[StepTrigger]:
        return list(self._pending_triggers)

    # --- Teardown ---

    def _release_watcher(self) -> None:
        if self.watcher is not None:
            self.watcher.destroy()
            self.watcher = None

    def teardown(self) -> None:
        self._release_watcher()
        self._pending_triggers = []
        self._step_generation += 1

    async def on_refresh(self) -> None:
        step = self.current_step
        if step is None:
            return
        if self.content.step_by_cvid(step.cvid) is None:
            await self.close(ContentEndReason.STEP_NOT_FOUND)
            return
        self.current_step = self.content.step_by_cvid(step.cvid)
        base = await self.get_store_base_info(self.current_step.theme_id)
        if not self.is_destroyed:
            self.store.update(**base, current_step=self.current_step, progress=self.progress)

    def end_event_data(self, reason: ContentEndReason) -> Dict[str, Any]:
        data = super().end_event_data(reason)
        if self.current_step is not None:
            index = self.content.step_index(self.current_step.cvid)
            data.update(
                flow_step_number=index,
                flow_step_cvid=self.current_step.cvid,
                flow_step_name=self.current_step.name,
            )
        return data
