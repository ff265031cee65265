"""
Checklist — a list of tasks the user completes in any order or in sequence.

Behavioral contract:
- Completion is monotonic within a session: a completed item stays completed
- In sequential order an item completes only after every earlier item did
- `checklist_completed` is reported once per session
- New completions expand the checklist, unless a tour is active; then the
  expansion waits until the tour ends
- The expanded state is persisted per session and restored on reload
"""

import asyncio
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from guidance_kernel.content.base import ContentItem
from guidance_kernel.events.bus import ContentEvent
from guidance_kernel.models.conditions import ConditionType
from guidance_kernel.models.content import (
    BizEvents,
    ChecklistInitialDisplay,
    ChecklistItem,
    CompletionOrder,
    ContentEndReason,
    ContentType,
)
from guidance_kernel.models.runtime import ChecklistItemStatus
from guidance_kernel.models.store import ChecklistItemView, ChecklistSnapshot

logger = logging.getLogger(__name__)

EXPANDED_STORAGE_KEY = "checklist-expanded:{session_id}"


class _ItemVerdict(NamedTuple):
    complete: bool
    visible: bool


class Checklist(ContentItem):
    content_type = ContentType.CHECKLIST

    def __init__(self, orchestrator: Any, content):
        super().__init__(orchestrator, content)
        self.item_status: Dict[str, ChecklistItemStatus] = {}
        self.expanded = False
        self.expanded_before_tour: Optional[bool] = None
        self._pending_completed: set = set()
        self._completed_reported = False
        self._last_reported: Optional[BizEvents] = None
        self._seen_task: Optional[asyncio.Task] = None

    def default_snapshot(self) -> ChecklistSnapshot:
        return ChecklistSnapshot()

    @property
    def items(self) -> List[ChecklistItem]:
        return self.content.checklist_data().items

    # --- Start ---

    async def show(self, step_cvid: Optional[str] = None) -> None:
        self._restore_status()
        initial = self._initial_expanded()

        base = await self.get_store_base_info()
        if self.is_destroyed:
            return
        self.store.set_data(ChecklistSnapshot(**base, expanded=False, items=self._views()))
        if self.is_hide_satisfied():
            self.temporarily_hide()
        else:
            self.ensure_visible()

        if self.orchestrator.active_tour is not None:
            self.expanded_before_tour = initial
        elif initial:
            await self.expand(True)

    def _restore_status(self) -> None:
        """Rebuild item state from the events of a continued session."""
        session = self.session
        self.item_status = {item.id: ChecklistItemStatus() for item in self.items}
        self._completed_reported = False
        self._last_reported = None
        if session is None:
            return
        for event in session.events_named(BizEvents.CHECKLIST_TASK_CLICKED.value):
            status = self.item_status.get(event.data.get("checklist_task_id"))
            if status is not None:
                status.clicked = True
        for event in session.events_named(BizEvents.CHECKLIST_TASK_COMPLETED.value):
            status = self.item_status.get(event.data.get("checklist_task_id"))
            if status is not None:
                status.completed = True
        self._completed_reported = session.has_event(BizEvents.CHECKLIST_COMPLETED.value)
        latest = session.latest_event(
            BizEvents.CHECKLIST_SEEN.value, BizEvents.CHECKLIST_HIDDEN.value
        )
        if latest is not None:
            self._last_reported = BizEvents(latest.code_name)

    def _initial_expanded(self) -> bool:
        if self._last_reported is not None:
            return self._last_reported == BizEvents.CHECKLIST_SEEN
        stored = self.environment.storage.get(self._storage_key())
        if stored is not None:
            return bool(stored)
        return self.content.checklist_data().initial_display == ChecklistInitialDisplay.EXPANDED

    def _storage_key(self) -> str:
        return EXPANDED_STORAGE_KEY.format(session_id=self.session_id)

    # --- Items ---

    async def _evaluate_item(self, item: ChecklistItem) -> _ItemVerdict:
        status = self.item_status.setdefault(item.id, ChecklistItemStatus())
        overrides = {ConditionType.TASK_IS_CLICKED.value: status.clicked}
        complete_check = self.rules.check(item.complete_conditions, overrides)
        if item.only_show_task and item.only_show_task_conditions:
            complete, visible = await asyncio.gather(
                complete_check, self.rules.check(item.only_show_task_conditions, overrides)
            )
        else:
            complete, visible = await complete_check, True
        return _ItemVerdict(complete=complete, visible=visible)

    async def process_items(self) -> List[ChecklistItem]:
        """Evaluate every item; returns the items that completed on this pass."""
        data = self.content.checklist_data()
        verdicts = await asyncio.gather(*(self._evaluate_item(item) for item in data.items))
        if self.is_destroyed:
            return []

        newly_completed = []
        for index, (item, verdict) in enumerate(zip(data.items, verdicts)):
            status = self.item_status.setdefault(item.id, ChecklistItemStatus())
            status.visible = verdict.visible
            if status.completed or not verdict.complete:
                continue
            if data.completion_order == CompletionOrder.SEQUENTIAL and not all(
                self.item_status[previous.id].completed for previous in data.items[:index]
            ):
                continue
            status.completed = True
            status.show_animation = True
            newly_completed.append(item)
        return newly_completed

    def all_completed(self) -> bool:
        visible = [s for s in self.item_status.values() if s.visible]
        return bool(visible) and all(s.completed for s in visible)

    def _views(self) -> List[ChecklistItemView]:
        views = []
        for item in self.items:
            status = self.item_status.get(item.id, ChecklistItemStatus())
            views.append(
                ChecklistItemView(
                    id=item.id,
                    name=item.name,
                    is_completed=status.completed,
                    is_visible=status.visible,
                    is_clicked=status.clicked,
                    is_show_animation=status.show_animation,
                )
            )
        return views

    # --- Monitoring ---

    async def monitor_started(self) -> None:
        if self.is_hide_satisfied():
            self.temporarily_hide()
        else:
            self.ensure_visible()

        newly_completed = await self.process_items()
        if self.is_destroyed:
            return
        for item in newly_completed:
            await self.report_event(
                BizEvents.CHECKLIST_TASK_COMPLETED,
                {"checklist_task_id": item.id, "checklist_task_name": item.name},
            )
        self.store.update(items=self._views())

        if newly_completed:
            self._pending_completed.update(item.id for item in newly_completed)
            if self.orchestrator.active_tour is None:
                await self.expand(True)
            elif self.expanded_before_tour is None:
                self.expanded_before_tour = False

        if self.all_completed() and not self._completed_reported:
            self._completed_reported = True
            await self.report_event(BizEvents.CHECKLIST_COMPLETED)
            if self.content.checklist_data().auto_dismiss_checklist:
                await self.close(ContentEndReason.AUTO_DISMISSED)

    # --- Expansion ---

    async def expand(self, expanded: bool) -> None:
        """Open or collapse the checklist and persist the choice."""
        if self.is_destroyed or self.expanded == expanded:
            return
        self.expanded = expanded
        self.environment.storage.set(self._storage_key(), expanded)
        self.store.update(expanded=expanded)
        self.bus.trigger(ContentEvent.CHECKLIST_EXPANDED, expanded)

        if expanded:
            self._pending_completed.clear()
            if self._seen_task is None or self._seen_task.done():
                self._seen_task = self.schedule(self._report_seen_later())
            return

        if self._seen_task is not None and not self._seen_task.done():
            self._seen_task.cancel()
            self._seen_task = None
            return
        if self._last_reported == BizEvents.CHECKLIST_SEEN:
            self._last_reported = BizEvents.CHECKLIST_HIDDEN
            await self.report_event(BizEvents.CHECKLIST_HIDDEN)

    async def _report_seen_later(self) -> None:
        await self.clock.sleep(self.config.expand_report_delay_seconds)
        if self.is_destroyed or not self.expanded:
            return
        if self._last_reported != BizEvents.CHECKLIST_SEEN:
            self._last_reported = BizEvents.CHECKLIST_SEEN
            await self.report_event(BizEvents.CHECKLIST_SEEN)

    async def handle_expanded_change(self, expanded: bool) -> None:
        await self.expand(expanded)

    async def collapse_for_tour(self) -> None:
        if self.is_destroyed or not self.is_started:
            return
        if self.expanded_before_tour is None:
            self.expanded_before_tour = self.expanded
        await self.expand(False)

    async def restore_after_tour(self) -> None:
        if self.expanded_before_tour is None:
            return
        should_expand = self.expanded_before_tour or bool(self._pending_completed)
        self.expanded_before_tour = None
        if should_expand:
            await self.expand(True)

    # --- User interaction ---

    async def handle_item_click(self, item_id: str) -> bool:
        item = next((i for i in self.items if i.id == item_id), None)
        if item is None or self.is_destroyed:
            logger.warning("Unknown checklist item %s in %s", item_id, self.content_id)
            return False
        status = self.item_status.setdefault(item.id, ChecklistItemStatus())
        if not status.clicked:
            status.clicked = True
            await self.report_event(
                BizEvents.CHECKLIST_TASK_CLICKED,
                {"checklist_task_id": item.id, "checklist_task_name": item.name},
            )
        self.store.update(items=self._views())
        if item.click_actions:
            await self.orchestrator.dispatcher.execute(item.click_actions, self)
        return True

    async def handle_dismiss(self, reason: ContentEndReason = ContentEndReason.USER_CLOSED) -> None:
        if self.content.checklist_data().prevent_dismiss_checklist and reason == ContentEndReason.USER_CLOSED:
            logger.info("Checklist %s cannot be dismissed by the user", self.content_id)
            return
        await self.close(reason)

    async def on_refresh(self) -> None:
        for item in self.items:
            self.item_status.setdefault(item.id, ChecklistItemStatus())
        base = await self.get_store_base_info()
        if not self.is_destroyed:
            self.store.update(**base, items=self._views())

    def teardown(self) -> None:
        self._seen_task = None
