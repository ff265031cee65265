"""
Orchestrator — owns the content items and decides which of them run.

Arbitration:
- At most one tour is active; starting a different tour closes the prior one
- At most one checklist is active; starting a tour collapses it, and it
  re-expands after the tour only if it was expanded or has new completions
- Launchers are independent of each other and of tours
- Start order: URL-requested content, explicit id, a session to resume,
  then the highest-priority eligible content (list order breaks ties)

Slots are claimed synchronously before the first await of a start, so two
starts racing for the tour slot cannot both win.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from guidance_kernel.content.actions import ActionDispatcher
from guidance_kernel.content.base import ContentItem, SessionUnavailableError
from guidance_kernel.content.checklist import Checklist
from guidance_kernel.content.launcher import Launcher
from guidance_kernel.content.tour import Tour
from guidance_kernel.content.validity import priority_rank, wait_seconds
from guidance_kernel.environment.base import Environment
from guidance_kernel.events.bus import ContentEvent, EventBus, OrchestratorEvent
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import (
    BizEvents,
    ContentDefinition,
    ContentEndReason,
    ContentSession,
    ContentStartReason,
    ContentType,
    Theme,
)
from guidance_kernel.models.runtime import ContentState
from guidance_kernel.models.user import CompanyInfo, ProjectSettings, UserInfo
from guidance_kernel.rules.engine import RuleEngine
from guidance_kernel.rules.url_pattern import parse_url_param
from guidance_kernel.scheduler.clock import Clock, SystemClock
from guidance_kernel.scheduler.loop import Scheduler, TickReport
from guidance_kernel.session.coordinator import SessionCoordinator
from guidance_kernel.transport.base import Transport

logger = logging.getLogger(__name__)

ANONYMOUS_ID_KEY = "anonymous-id"

ITEM_TYPES = {
    ContentType.FLOW: Tour,
    ContentType.CHECKLIST: Checklist,
    ContentType.LAUNCHER: Launcher,
}


class Orchestrator:
    def __init__(
        self,
        environment: Environment,
        transport: Transport,
        config: Optional[KernelConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.environment = environment
        self.transport = transport
        self.config = config or KernelConfig()
        self.clock = clock or SystemClock()

        self.rules = RuleEngine(environment, self.clock, self.config)
        self.sessions = SessionCoordinator(transport, self.clock, self.config)
        self.dispatcher = ActionDispatcher(environment)
        self.bus = EventBus()
        self.scheduler = Scheduler(
            self.live_items, self.clock, self.config, after_tick=self.start_contents
        )

        self.user_info: Optional[UserInfo] = None
        self.company_info: Optional[CompanyInfo] = None
        self.themes: List[Theme] = []
        self.settings = ProjectSettings()
        self.contents: List[ContentDefinition] = []

        self.tours: Dict[str, Tour] = {}
        self.checklists: Dict[str, Checklist] = {}
        self.launchers: Dict[str, Launcher] = {}
        self.active_tour: Optional[Tour] = None
        self.active_checklist: Optional[Checklist] = None

        self._started = False
        self._url_started_for: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    # --- Configuration ---

    def _set_config(self, field: str, value: Any) -> None:
        try:
            validated = KernelConfig(**{**self.config.model_dump(), field: value})
        except ValueError as e:
            raise ValueError(f"Invalid {field}: {value}") from e
        setattr(self.config, field, getattr(validated, field))

    def set_target_missing_seconds(self, seconds: float) -> None:
        self._set_config("target_missing_seconds", seconds)
        for item in self.live_items():
            watcher = getattr(item, "watcher", None)
            if watcher is not None:
                watcher.set_target_missing_seconds(seconds)

    def set_session_timeout(self, hours: float) -> None:
        self._set_config("session_timeout_hours", hours)

    # --- Collections ---

    @property
    def is_started(self) -> bool:
        return self._started

    def _collection(self, content_type: ContentType) -> Dict[str, ContentItem]:
        if content_type == ContentType.FLOW:
            return self.tours
        if content_type == ContentType.CHECKLIST:
            return self.checklists
        return self.launchers

    def live_items(self) -> List[ContentItem]:
        """Items the scheduler monitors, in stable order."""
        return [
            item
            for collection in (self.tours, self.checklists, self.launchers)
            for item in collection.values()
            if not item.is_destroyed
        ]

    def get_item(self, content_id: str) -> Optional[ContentItem]:
        for collection in (self.tours, self.checklists, self.launchers):
            if content_id in collection:
                return collection[content_id]
        return None

    def find_content(self, content_id: str) -> Optional[ContentDefinition]:
        return next((c for c in self.contents if c.content_id == content_id), None)

    def find_theme(self, theme_id: Optional[str]) -> Optional[Theme]:
        theme = next((t for t in self.themes if t.id == theme_id), None) if theme_id else None
        if theme is None:
            theme = next((t for t in self.themes if t.is_default), None)
        return theme

    def visible_tours(self) -> List[Tour]:
        return [t for t in self.tours.values() if t.state == ContentState.VISIBLE]

    def _create_item(self, content: ContentDefinition) -> ContentItem:
        item = ITEM_TYPES[content.type](self, content)
        item.bus.on(ContentEvent.DESTROYED, self._on_item_destroyed)
        return item

    def _fresh_item(self, content: ContentDefinition) -> ContentItem:
        """The live item for a content, replacing a destroyed one."""
        collection = self._collection(content.type)
        item = collection.get(content.content_id)
        if item is None or item.is_destroyed:
            item = self._create_item(content)
            collection[content.content_id] = item
        return item

    def _on_item_destroyed(self, item: ContentItem) -> None:
        if item is self.active_tour:
            self.active_tour = None
            self.bus.trigger(OrchestratorEvent.TOUR_RELEASED, item)
            checklist = self.active_checklist
            if checklist is not None and checklist.expanded_before_tour is not None:
                self._spawn(self._restore_checklist())
        if item is self.active_checklist:
            self.active_checklist = None

    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for delayed starts scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _call(self, operation: str, awaitable) -> Any:
        try:
            result = await awaitable
        except Exception:
            logger.exception("Transport call %s failed", operation)
            return None
        if result is None:
            logger.error("Transport call %s returned nothing", operation)
        return result

    # --- Identity ---

    async def identify(
        self, external_id: str, attributes: Optional[Dict[str, Any]] = None, is_anonymous: bool = False
    ) -> bool:
        user = await self._call(
            "upsert_user", self.transport.upsert_user(external_id, attributes or {}, is_anonymous)
        )
        if not user:
            return False
        if self.user_info is not None and self.user_info.external_id != user.external_id:
            logger.info("User changed from %s to %s", self.user_info.external_id, user.external_id)
            await self.reset()
        self.user_info = user
        return await self.start()

    async def identify_anonymous(self, attributes: Optional[Dict[str, Any]] = None) -> bool:
        storage = self.environment.storage
        anonymous_id = storage.get(ANONYMOUS_ID_KEY)
        if not anonymous_id:
            anonymous_id = f"anon_{uuid4().hex[:16]}"
            storage.set(ANONYMOUS_ID_KEY, anonymous_id)
        return await self.identify(anonymous_id, attributes, is_anonymous=True)

    async def update_user(self, attributes: Dict[str, Any]) -> bool:
        if self.user_info is None:
            logger.error("update_user called before identify")
            return False
        user = await self._call(
            "upsert_user",
            self.transport.upsert_user(
                self.user_info.external_id, attributes, self.user_info.is_anonymous
            ),
        )
        if not user:
            return False
        self.user_info = user
        await self.refresh_contents()
        return True

    async def group(
        self,
        company_id: str,
        attributes: Optional[Dict[str, Any]] = None,
        membership: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if self.user_info is None:
            logger.error("group called before identify")
            return False
        company = await self._call(
            "upsert_company",
            self.transport.upsert_company(
                self.user_info.external_id, company_id, attributes or {}, membership
            ),
        )
        if not company:
            return False
        self.company_info = company
        await self.refresh_contents()
        return True

    async def update_group(
        self, attributes: Optional[Dict[str, Any]] = None, membership: Optional[Dict[str, Any]] = None
    ) -> bool:
        if self.company_info is None:
            logger.error("update_group called before group")
            return False
        return await self.group(self.company_info.external_id, attributes, membership)

    # --- Startup and content ---

    async def start(self) -> bool:
        """Load themes, settings and contents, then run the first arbitration."""
        if not self.environment.has_container():
            logger.error("No container available, guidance not started")
            return False
        if self.user_info is None:
            logger.warning("start called before identify")
            return False

        themes = await self._call("list_themes", self.transport.list_themes())
        if themes is not None:
            self.themes = list(themes)
        settings = await self._call("get_project_settings", self.transport.get_project_settings())
        if settings is not None:
            self.settings = settings
        await self.refresh_contents()

        self._started = True
        self.bus.trigger(OrchestratorEvent.READY, self)
        await self.start_contents()
        return True

    async def refresh_contents(self) -> bool:
        if self.user_info is None:
            return False
        contents = await self._call(
            "list_contents", self.transport.list_contents(self.user_info.external_id)
        )
        if contents is None:
            return False
        await self.set_contents(contents)
        return True

    async def set_contents(self, contents: List[ContentDefinition]) -> None:
        """Apply a new server list: create, refresh or remove items."""
        self.contents = list(contents)
        live_ids = set()
        for content in self.contents:
            live_ids.add(content.content_id)
            collection = self._collection(content.type)
            item = collection.get(content.content_id)
            if item is None:
                collection[content.content_id] = self._create_item(content)
            elif not item.is_equal(content):
                item.set_content(content)
                await item.refresh()

        for collection in (self.tours, self.checklists, self.launchers):
            for content_id in [cid for cid in collection if cid not in live_ids]:
                item = collection.pop(content_id)
                if item.is_started and not item.is_destroyed:
                    await item.close(ContentEndReason.UNPUBLISHED_CONTENT)
                else:
                    item.destroy()
        self.bus.trigger(OrchestratorEvent.CONTENTS_CHANGED, self.contents)

    def refresh_content_session(self, session: ContentSession) -> bool:
        """Merge a server-pushed session into its content and item."""
        content = self.find_content(session.content_id)
        if content is None:
            logger.debug("Session %s for unknown content %s", session.id, session.content_id)
            return False
        updated = content.model_copy(update={"latest_session": session})
        self.contents = [updated if c is content else c for c in self.contents]
        item = self._collection(content.type).get(content.content_id)
        if item is not None:
            item.set_content(updated)
            if item.session_id == session.id:
                item.session = session
        return True

    def close_content_session(
        self, content_id: str, session_id: str, ended: Optional[ContentSession] = None
    ) -> None:
        """Keep a closed session from being continued by the next start."""
        content = self.find_content(content_id)
        if content is None or content.latest_session is None:
            return
        if content.latest_session.id != session_id:
            return
        if ended is not None:
            self.refresh_content_session(ended)
            return
        # End event not acknowledged, forget the session locally
        updated = content.model_copy(update={"latest_session": None})
        self.contents = [updated if c is content else c for c in self.contents]
        item = self._collection(content.type).get(content_id)
        if item is not None:
            item.set_content(updated)

    def _can_start(self) -> bool:
        return self._started and self.user_info is not None and self.environment.has_container()

    def _take_url_content_id(self) -> Optional[str]:
        """The URL-requested content id, once per distinct URL."""
        url = self.environment.current_url()
        content_id = parse_url_param(url, self.config.url_param_name)
        if not content_id or url == self._url_started_for:
            return None
        self._url_started_for = url
        return content_id

    def _latest_resumable(self, collection: Dict[str, ContentItem], event: Optional[BizEvents] = None):
        """The item whose unfinished session is the most recent."""
        candidates = []
        for item in collection.values():
            if item.is_destroyed or item.is_dismissed or item.is_started:
                continue
            session = self.sessions.reusable_session(item.content)
            if session is None:
                continue
            if event is not None and not session.has_event(event.value):
                continue
            candidates.append((session.created_at, item))
        if not candidates:
            return None
        return max(candidates, key=lambda c: c[0])[1]

    @staticmethod
    def _by_priority(items: List[ContentItem]) -> List[ContentItem]:
        return sorted(items, key=lambda item: priority_rank(item.content))

    async def start_contents(self) -> None:
        """One arbitration pass: tour, then checklist, then launchers."""
        if not self._can_start():
            return
        await self.start_tour()
        await self.start_checklist()
        await self.start_launchers()
        await self.check_invariants()

    async def start_content(
        self,
        content_id: str,
        step_cvid: Optional[str] = None,
        reason: ContentStartReason = ContentStartReason.START_FROM_PROGRAM,
    ) -> bool:
        """Start any content by id, whatever its type."""
        content = self.find_content(content_id)
        if content is None:
            logger.warning("Cannot start unknown content %s", content_id)
            return False
        if not self._can_start():
            logger.warning("Cannot start %s before the kernel is started", content_id)
            return False
        item = self._fresh_item(content)
        if content.type == ContentType.FLOW:
            return await self._activate_tour(item, reason, step_cvid=step_cvid) is not None
        if content.type == ContentType.CHECKLIST:
            return await self._activate_checklist(item, reason) is not None
        return await self._start_launcher(item, reason)

    # --- Tours ---

    async def start_tour(
        self,
        content_id: Optional[str] = None,
        reason: Optional[ContentStartReason] = None,
        step_cvid: Optional[str] = None,
    ) -> Optional[Tour]:
        if not self._can_start():
            return None

        url_content_id = self._take_url_content_id()
        if url_content_id:
            content = self.find_content(url_content_id)
            if content is not None and content.type == ContentType.FLOW:
                return await self._activate_tour(
                    self._fresh_item(content),
                    ContentStartReason.START_FROM_URL,
                    replace_reason=ContentEndReason.URL_START_CLOSED,
                )
            if content is not None:
                await self.start_content(url_content_id, reason=ContentStartReason.START_FROM_URL)

        if content_id is not None:
            content = self.find_content(content_id)
            if content is None or content.type != ContentType.FLOW:
                logger.warning("No tour with content id %s", content_id)
                return None
            return await self._activate_tour(
                self._fresh_item(content), reason or ContentStartReason.START_FROM_PROGRAM, step_cvid
            )

        if self.active_tour is not None:
            logger.debug("Tour %s already active", self.active_tour.content_id)
            return self.active_tour

        resumable = self._latest_resumable(self.tours, BizEvents.FLOW_STEP_SEEN)
        if resumable is not None:
            return await self._activate_tour(resumable, ContentStartReason.START_FROM_SESSION)

        candidates = [t for t in self.tours.values() if t.can_auto_start()]
        if not candidates:
            return None
        return await self._activate_tour(
            self._by_priority(candidates)[0], ContentStartReason.START_FROM_CONDITION, auto=True
        )

    async def _activate_tour(
        self,
        tour: Tour,
        reason: ContentStartReason,
        step_cvid: Optional[str] = None,
        auto: bool = False,
        replace_reason: ContentEndReason = ContentEndReason.USER_STARTED_OTHER_CONTENT,
    ) -> Optional[Tour]:
        previous = self.active_tour
        if previous is tour:
            if step_cvid and tour.is_started:
                await tour.goto(step_cvid)
            return tour

        self.active_tour = tour
        self.bus.trigger(OrchestratorEvent.TOUR_ACTIVATED, tour)
        if previous is not None:
            await previous.close(replace_reason)
        if self.active_checklist is not None:
            await self.active_checklist.collapse_for_tour()

        if auto and wait_seconds(tour.content, self.config.max_wait_seconds) > 0:
            self._spawn(self._run_tour_start(tour, reason, step_cvid, auto))
            return tour
        if await self._run_tour_start(tour, reason, step_cvid, auto):
            return tour
        return None

    async def _run_tour_start(
        self, tour: Tour, reason: ContentStartReason, step_cvid: Optional[str], auto: bool
    ) -> bool:
        try:
            if auto:
                started = await tour.auto_start(reason)
            else:
                started = await tour.start(reason, step_cvid)
        except SessionUnavailableError as e:
            logger.error("%s", e)
            started = False
        if not started:
            if self.active_tour is tour:
                self.active_tour = None
                self.bus.trigger(OrchestratorEvent.TOUR_RELEASED, tour)
                await self._restore_checklist()
            return False
        await self.check_invariants()
        return True

    async def close_active_tour(self, reason: ContentEndReason = ContentEndReason.END_FROM_PROGRAM) -> bool:
        tour = self.active_tour
        if tour is None:
            return False
        await tour.close(reason)
        await self._restore_checklist()
        return True

    # --- Checklists ---

    async def _restore_checklist(self) -> None:
        checklist = self.active_checklist
        if self.active_tour is None and checklist is not None and checklist.is_started:
            await checklist.restore_after_tour()

    async def start_checklist(
        self, content_id: Optional[str] = None, reason: Optional[ContentStartReason] = None
    ) -> Optional[Checklist]:
        if not self._can_start():
            return None

        if content_id is not None:
            content = self.find_content(content_id)
            if content is None or content.type != ContentType.CHECKLIST:
                logger.warning("No checklist with content id %s", content_id)
                return None
            return await self._activate_checklist(
                self._fresh_item(content), reason or ContentStartReason.START_FROM_PROGRAM
            )

        if self.active_checklist is not None:
            await self._restore_checklist()
            return self.active_checklist

        resumable = self._latest_resumable(self.checklists)
        if resumable is not None:
            return await self._activate_checklist(resumable, ContentStartReason.START_FROM_SESSION)

        candidates = [c for c in self.checklists.values() if c.can_auto_start()]
        if not candidates:
            return None
        return await self._activate_checklist(
            self._by_priority(candidates)[0], ContentStartReason.START_FROM_CONDITION, auto=True
        )

    async def _activate_checklist(
        self, checklist: Checklist, reason: ContentStartReason, auto: bool = False
    ) -> Optional[Checklist]:
        previous = self.active_checklist
        if previous is checklist:
            return checklist

        self.active_checklist = checklist
        if previous is not None:
            await previous.close(ContentEndReason.PROGRAM_STARTED_OTHER_CONTENT)

        if auto and wait_seconds(checklist.content, self.config.max_wait_seconds) > 0:
            self._spawn(self._run_checklist_start(checklist, reason, auto))
            return checklist
        if await self._run_checklist_start(checklist, reason, auto):
            return checklist
        return None

    async def _run_checklist_start(
        self, checklist: Checklist, reason: ContentStartReason, auto: bool
    ) -> bool:
        try:
            started = await (checklist.auto_start(reason) if auto else checklist.start(reason))
        except SessionUnavailableError as e:
            logger.error("%s", e)
            started = False
        if not started and self.active_checklist is checklist:
            self.active_checklist = None
        return started

    async def close_active_checklist(
        self, reason: ContentEndReason = ContentEndReason.END_FROM_PROGRAM
    ) -> bool:
        checklist = self.active_checklist
        if checklist is None:
            return False
        await checklist.close(reason)
        return True

    # --- Launchers ---

    async def start_launchers(self) -> List[Launcher]:
        """Begin watching for every eligible launcher's target."""
        if not self._can_start():
            return []
        started = []
        for launcher in list(self.launchers.values()):
            if not launcher.can_auto_start():
                continue
            if wait_seconds(launcher.content, self.config.max_wait_seconds) > 0:
                self._spawn(launcher.auto_start(ContentStartReason.START_FROM_CONDITION))
            else:
                await launcher.auto_start(ContentStartReason.START_FROM_CONDITION)
            started.append(launcher)
        return started

    async def _start_launcher(self, launcher: Launcher, reason: ContentStartReason) -> bool:
        if launcher.is_started:
            return True
        try:
            return await launcher.start(reason)
        except SessionUnavailableError as e:
            logger.error("%s", e)
            return False

    # --- Invariants and teardown ---

    async def check_invariants(self) -> bool:
        """Close every visible tour other than the active one."""
        visible = self.visible_tours()
        if len(visible) <= 1:
            return True
        logger.error("%d tours visible at once", len(visible))
        for tour in visible:
            if tour is not self.active_tour:
                await tour.close(ContentEndReason.SYSTEM_CLOSED)
        return False

    async def end_all(self, reason: ContentEndReason = ContentEndReason.END_FROM_PROGRAM) -> None:
        """Close every running item."""
        await self.close_active_tour(reason)
        await self.close_active_checklist(reason)
        for launcher in list(self.launchers.values()):
            if launcher.is_started and not launcher.is_destroyed:
                await launcher.close(reason)

    async def reset(self) -> None:
        """End everything and forget the user."""
        await self.end_all()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        for item in self.live_items():
            item.destroy()
        self.tours.clear()
        self.checklists.clear()
        self.launchers.clear()
        self.active_tour = None
        self.active_checklist = None
        self.rules.clear()
        self.contents = []
        self.user_info = None
        self.company_info = None
        self._started = False
        self._url_started_for = None

    # --- Driving ---

    async def tick(self) -> TickReport:
        return await self.scheduler.tick()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        await self.scheduler.run(stop_event)

    def status(self) -> dict:
        return {
            "started": self._started,
            "user": self.user_info.external_id if self.user_info else None,
            "active_tour": self.active_tour.content_id if self.active_tour else None,
            "active_checklist": self.active_checklist.content_id if self.active_checklist else None,
            "visible_tours": [t.content_id for t in self.visible_tours()],
            "items": [item.status() for item in self.live_items()],
            "tick_count": self.scheduler.tick_count,
        }
