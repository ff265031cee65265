"""
In-memory transport — a server stand-in for the headless host and tests.

Holds published contents, themes and sessions. `offline` makes every call
fail; `fail_next` fails the next call to a single method.
"""

import logging
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from guidance_kernel.models.content import (
    START_EVENTS,
    BizEvent,
    BizEventType,
    ContentDefinition,
    ContentSession,
    Theme,
)
from guidance_kernel.models.user import CompanyInfo, ProjectSettings, UserInfo
from guidance_kernel.scheduler.clock import Clock, SystemClock
from guidance_kernel.transport.base import Transport

logger = logging.getLogger(__name__)


class InMemoryTransport(Transport):
    def __init__(
        self,
        contents: Optional[List[ContentDefinition]] = None,
        themes: Optional[List[Theme]] = None,
        settings: Optional[ProjectSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.contents: List[ContentDefinition] = list(contents or [])
        self.themes: List[Theme] = list(themes or [])
        self.settings = settings or ProjectSettings()
        self.clock = clock or SystemClock()

        self.users: Dict[str, UserInfo] = {}
        self.companies: Dict[str, CompanyInfo] = {}
        self.sessions: Dict[str, ContentSession] = {}
        self.events: List[dict] = []
        self.calls: List[str] = []

        self.offline = False
        self._fail_next: Set[str] = set()

    def fail_next(self, method: str) -> None:
        self._fail_next.add(method)

    def _fails(self, method: str) -> bool:
        self.calls.append(method)
        if self.offline:
            return True
        if method in self._fail_next:
            self._fail_next.discard(method)
            return True
        return False

    def events_named(self, event_name: str) -> List[dict]:
        return [e for e in self.events if e["event"] == event_name]

    def publish(self, content: ContentDefinition) -> None:
        """Add or replace a published content version."""
        self.contents = [c for c in self.contents if c.content_id != content.content_id]
        self.contents.append(content)

    def unpublish(self, content_id: str) -> None:
        self.contents = [c for c in self.contents if c.content_id != content_id]

    # --- Transport ---

    async def upsert_user(self, external_id, attributes, is_anonymous=False):
        if self._fails("upsert_user"):
            return None
        existing = self.users.get(external_id)
        data = dict(existing.data) if existing else {}
        data.update(attributes or {})
        user = UserInfo(external_id=external_id, is_anonymous=is_anonymous, data=data)
        self.users[external_id] = user
        return user

    async def upsert_company(self, external_user_id, external_company_id, attributes, membership=None):
        if self._fails("upsert_company"):
            return None
        company = CompanyInfo(
            external_id=external_company_id,
            data=dict(attributes or {}),
            membership=dict(membership or {}),
        )
        self.companies[external_company_id] = company
        return company

    async def list_contents(self, external_user_id):
        if self._fails("list_contents"):
            return None
        result = []
        for content in self.contents:
            latest = self._latest_session(content.content_id)
            result.append(content.model_copy(update={"latest_session": latest}))
        return result

    async def list_themes(self):
        if self._fails("list_themes"):
            return None
        return list(self.themes)

    async def get_project_settings(self):
        if self._fails("get_project_settings"):
            return None
        return self.settings

    async def create_session(self, external_user_id, content_id, version_id=None, reason=None):
        if self._fails("create_session"):
            return None
        content = next((c for c in self.contents if c.content_id == content_id), None)
        if content is None:
            logger.error("create_session for unknown content %s", content_id)
            return None
        session = ContentSession(
            id=f"session_{uuid4().hex[:12]}",
            content_id=content_id,
            version_id=version_id or content.id,
            created_at=self.clock.now(),
        )
        start_event = START_EVENTS.get(content.type)
        if start_event is not None:
            session.biz_event.append(self._event(start_event.value, {"start_reason": reason}))
        self.sessions[session.id] = session
        return session.model_copy(deep=True)

    async def track_event(self, external_user_id, session_id, event_name, data=None, batch=False):
        if self._fails("track_event"):
            return None
        session = self.sessions.get(session_id)
        record = {
            "user": external_user_id,
            "session_id": session_id,
            "event": event_name,
            "data": dict(data or {}),
            "batch": batch,
        }
        self.events.append(record)
        if session is None:
            return True
        session.biz_event.append(self._event(event_name, data))
        return session.model_copy(deep=True)

    def _event(self, event_name: str, data: Optional[Dict[str, Any]]) -> BizEvent:
        return BizEvent(
            id=f"event_{uuid4().hex[:12]}",
            created_at=self.clock.now(),
            event=BizEventType(code_name=event_name),
            data=dict(data or {}),
        )

    def _latest_session(self, content_id: str) -> Optional[ContentSession]:
        sessions = [s for s in self.sessions.values() if s.content_id == content_id]
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.created_at).model_copy(deep=True)
