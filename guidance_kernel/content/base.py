"""
Content lifecycle — the state machine every tour, checklist and launcher runs.

States:
  IDLE → WAITING_TO_START → STARTED → (VISIBLE | TEMPORARILY_HIDDEN) → (DISMISSED | DESTROYED)

Behavioral contract:
- No session, no start: a failed session request aborts the start
- Hide rules pause an item (open_state=False) without ending its session
- Results of awaited calls are discarded when the item was destroyed meanwhile
- The definition is never mutated; evaluated rule trees live beside it
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from guidance_kernel.content.validity import is_valid_content, wait_seconds
from guidance_kernel.events.bus import ContentEvent, EventBus
from guidance_kernel.models.content import (
    END_EVENTS,
    BizEvents,
    ContentDefinition,
    ContentEndReason,
    ContentSession,
    ContentStartReason,
    ContentType,
)
from guidance_kernel.models.runtime import ContentState
from guidance_kernel.models.store import BaseSnapshot
from guidance_kernel.rules.engine import RuleEngine
from guidance_kernel.store.snapshot_store import Store

logger = logging.getLogger(__name__)


class SessionUnavailableError(Exception):
    """Raised when a start could not obtain a session."""

    def __init__(self, content_id: str):
        super().__init__(f"No session available for content {content_id}")
        self.content_id = content_id


class ContentItem(ABC):
    """Runtime instance wrapping one content definition."""

    content_type: ContentType

    def __init__(self, orchestrator: Any, content: ContentDefinition):
        self.orchestrator = orchestrator
        self.content = content
        self.store: Store = Store(self.default_snapshot)
        self.bus = EventBus()

        self.state = ContentState.IDLE
        self.session: Optional[ContentSession] = None
        self.is_started = False
        self.is_dismissed = False
        self.start_reason: Optional[str] = None
        self.end_reason: Optional[ContentEndReason] = None

        self._generation = 0
        self._auto_start_tree: List[Any] = []
        self._hide_tree: List[Any] = []
        self._timers: List[asyncio.Task] = []

    # --- Collaborators ---

    @property
    def environment(self):
        return self.orchestrator.environment

    @property
    def clock(self):
        return self.orchestrator.clock

    @property
    def config(self):
        return self.orchestrator.config

    @property
    def rules(self) -> RuleEngine:
        return self.orchestrator.rules

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def content_id(self) -> str:
        return self.content.content_id

    @property
    def is_destroyed(self) -> bool:
        return self.state == ContentState.DESTROYED

    @abstractmethod
    def default_snapshot(self) -> BaseSnapshot:
        """The snapshot an idle or destroyed item shows."""

    @abstractmethod
    async def show(self, step_cvid: Optional[str] = None) -> None:
        """Type-specific presentation after a successful start."""

    # --- Definition ---

    def set_content(self, content: ContentDefinition) -> None:
        self.content = content

    def get_content(self) -> ContentDefinition:
        return self.content

    def is_equal(self, content: ContentDefinition) -> bool:
        return self.content == content

    async def refresh(self) -> None:
        """Re-derive the snapshot after the definition changed."""
        if self.is_started and not self.is_destroyed:
            await self.on_refresh()

    async def on_refresh(self) -> None:
        base = await self.get_store_base_info()
        self.store.update(**base)

    # --- Rules ---

    async def evaluate_rules(self) -> None:
        """Re-evaluate the auto-start and hide trees concurrently."""
        config = self.content.config
        auto_start = (
            config.auto_start_rules
            if config.enabled_auto_start_rules and not self.is_started
            else []
        )
        hide = config.hide_rules if config.enabled_hide_rules else []
        self._auto_start_tree, self._hide_tree = await asyncio.gather(
            self.rules.evaluate(auto_start), self.rules.evaluate(hide)
        )

    def is_auto_start_satisfied(self) -> bool:
        config = self.content.config
        if not config.enabled_auto_start_rules or not config.auto_start_rules:
            return True
        return RuleEngine.is_satisfied(self._auto_start_tree)

    def is_hide_satisfied(self) -> bool:
        config = self.content.config
        if not config.enabled_hide_rules or not config.hide_rules:
            return False
        return RuleEngine.is_satisfied(self._hide_tree)

    @property
    def evaluated_auto_start_rules(self) -> List[Any]:
        return self._auto_start_tree

    @property
    def evaluated_hide_rules(self) -> List[Any]:
        return self._hide_tree

    def is_valid(self) -> bool:
        return is_valid_content(
            self.content, self.orchestrator.contents, self.environment.now()
        )

    def can_auto_start(self) -> bool:
        if self.is_started or self.is_dismissed or self.is_destroyed:
            return False
        if self.state == ContentState.WAITING_TO_START:
            return False
        return self.is_auto_start_satisfied() and self.is_valid()

    # --- Lifecycle ---

    def reset_transient(self) -> None:
        self.end_reason = None
        self.start_reason = None

    async def auto_start(self, reason: str = ContentStartReason.START_FROM_CONDITION) -> bool:
        """Wait the configured delay, then start unless something intervened."""
        if self.is_destroyed or self.is_started:
            return False
        self.reset_transient()
        generation = self._generation
        self.state = ContentState.WAITING_TO_START

        wait = wait_seconds(self.content, self.config.max_wait_seconds)
        if wait > 0:
            await self.clock.sleep(wait)
        if generation != self._generation or self.state != ContentState.WAITING_TO_START:
            logger.debug("Auto-start of %s abandoned after wait", self.content_id)
            return False
        return await self.start(reason)

    async def start(self, reason: str = ContentStartReason.START_FROM_PROGRAM, step_cvid: Optional[str] = None) -> bool:
        """
        Resolve a session and show the item.

        Raises SessionUnavailableError when the server gives no session.
        Returns False when the start was abandoned for any other reason.
        """
        if self.is_destroyed:
            return False
        if not self.environment.has_container():
            logger.error("No container to show %s in", self.content_id)
            return False
        user = self.orchestrator.user_info
        if user is None:
            logger.warning("Cannot start %s before a user is identified", self.content_id)
            return False

        generation = self._generation
        self.state = ContentState.WAITING_TO_START
        session = await self.orchestrator.sessions.resolve(
            user.external_id, self.content, getattr(reason, "value", reason)
        )
        if generation != self._generation or self.is_destroyed:
            logger.debug("Discarding session for %s, item changed while waiting", self.content_id)
            return False
        if session is None:
            self.state = ContentState.IDLE
            raise SessionUnavailableError(self.content_id)

        self.session = session
        self.is_started = True
        self.is_dismissed = False
        self.start_reason = getattr(reason, "value", reason)
        self.state = ContentState.STARTED
        self.bus.trigger(ContentEvent.STARTED, self)
        await self.show(step_cvid)
        return True

    async def monitor(self) -> None:
        """One scheduler tick for this item."""
        if self.is_destroyed:
            return
        await self.evaluate_rules()
        if not self.is_started or self.is_dismissed or self.is_destroyed:
            return
        await self.monitor_started()

    async def monitor_started(self) -> None:
        if self.is_hide_satisfied():
            self.temporarily_hide()
        else:
            self.ensure_visible()

    def temporarily_hide(self) -> None:
        if self.state != ContentState.TEMPORARILY_HIDDEN:
            self.state = ContentState.TEMPORARILY_HIDDEN
            self.bus.trigger(ContentEvent.HIDDEN, self)
        self.store.update(open_state=False)

    def ensure_visible(self, open_state: bool = True) -> None:
        if self.state != ContentState.VISIBLE:
            self.state = ContentState.VISIBLE
            self.bus.trigger(ContentEvent.SHOWN, self)
        self.store.update(open_state=open_state)

    async def close(self, reason: ContentEndReason = ContentEndReason.USER_CLOSED) -> None:
        """End the session with a reason, then tear down."""
        if self.is_destroyed:
            return
        self.is_dismissed = True
        self.end_reason = reason
        self.state = ContentState.DISMISSED
        session = self.session
        self.bus.trigger(ContentEvent.CLOSED, reason)
        self.destroy()

        end_event = END_EVENTS.get(self.content.type)
        if session is not None and end_event is not None:
            result = await self._send(
                session.id, end_event, self.end_event_data(reason), update_session=False
            )
            ended = result if isinstance(result, ContentSession) else None
            self.orchestrator.close_content_session(self.content_id, session.id, ended)

    async def handle_dismiss(self, reason: ContentEndReason = ContentEndReason.USER_CLOSED) -> None:
        await self.close(reason)

    def end_event_data(self, reason: ContentEndReason) -> Dict[str, Any]:
        return {"end_reason": reason.value}

    def destroy(self) -> None:
        """Tear down watchers and timers and reset the store. Terminal."""
        if self.is_destroyed:
            return
        self._generation += 1
        self.teardown()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for timer in self._timers:
            # A timer may be the one closing the item
            if timer is not current and not timer.done():
                timer.cancel()
        self._timers.clear()
        self.store.reset()
        self.state = ContentState.DESTROYED
        self.bus.trigger(ContentEvent.DESTROYED, self)
        self.bus.off_all()

    def teardown(self) -> None:
        """Release type-specific resources."""
        return None

    def schedule(self, coroutine) -> asyncio.Task:
        """Run a coroutine owned by this item; cancelled on destroy."""
        task = asyncio.get_running_loop().create_task(coroutine)
        self._timers = [t for t in self._timers if not t.done()]
        self._timers.append(task)
        return task

    # --- Reporting ---

    async def report_event(
        self,
        event: BizEvents,
        data: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        batch: bool = False,
    ) -> Any:
        """Report a session event, by default for the current session."""
        session_id = session_id or self.session_id
        if session_id is None:
            return None
        return await self._send(session_id, event, data or {}, batch=batch)

    async def _send(
        self,
        session_id: str,
        event: BizEvents,
        data: Dict[str, Any],
        batch: bool = False,
        update_session: bool = True,
    ) -> Any:
        user = self.orchestrator.user_info
        if user is None:
            return None
        payload = dict(data)
        payload.setdefault("page_url", self.environment.current_url())
        generation = self._generation
        result = await self.orchestrator.sessions.report(
            user.external_id, session_id, event.value, payload, batch
        )
        if (
            update_session
            and isinstance(result, ContentSession)
            and generation == self._generation
            and self.session_id == session_id
        ):
            self.session = result
        return result

    # --- Snapshot helpers ---

    async def get_store_base_info(self, theme_id: Optional[str] = None) -> Dict[str, Any]:
        """Theme, z-index and identity fields shared by every snapshot type."""
        theme = self.orchestrator.find_theme(theme_id or self.content.theme_id)
        settings: Dict[str, Any] = dict(theme.settings) if theme else {}
        if theme is not None:
            for variation in theme.variations:
                if variation.conditions and await self.rules.check(variation.conditions):
                    settings = {**settings, **variation.settings}
                    break
        project = self.orchestrator.settings
        return {
            "theme": theme,
            "theme_settings": settings,
            "z_index": self.config.base_z_index,
            "user_info": self.orchestrator.user_info,
            "assets": list(project.assets),
            "sdk_config": project.sdk_config,
            "content": self.content,
        }

    async def start_new_content(self, content_id: str, step_cvid: Optional[str] = None) -> bool:
        return await self.orchestrator.start_content(
            content_id, step_cvid=step_cvid, reason=ContentStartReason.START_FROM_ACTION
        )

    def status(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "type": self.content.type.value,
            "state": self.state.value,
            "session_id": self.session_id,
            "is_started": self.is_started,
            "is_dismissed": self.is_dismissed,
            "end_reason": self.end_reason.value if self.end_reason else None,
        }
