"""
Session Coordinator — decides whether a start reuses a session or needs a new one.

A latest session is reusable when it exists, has not ended, has not
outlived the session timeout and belongs to the content version being
started. Anything else asks the server for a new session; a server failure
means no session, and no session means no start.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import END_EVENTS, ContentDefinition, ContentSession, ContentType
from guidance_kernel.scheduler.clock import Clock, SystemClock
from guidance_kernel.transport.base import Transport

logger = logging.getLogger(__name__)


class SessionCoordinator:
    def __init__(
        self,
        transport: Transport,
        clock: Optional[Clock] = None,
        config: Optional[KernelConfig] = None,
    ):
        self.transport = transport
        self.clock = clock or SystemClock()
        self.config = config or KernelConfig()

    @staticmethod
    def is_ended(session: ContentSession, content_type: ContentType) -> bool:
        end_event = END_EVENTS.get(content_type)
        return end_event is not None and session.has_event(end_event.value)

    def is_expired(self, session: ContentSession) -> bool:
        if self.config.session_timeout_hours <= 0:
            return False
        age = self.clock.now() - session.created_at
        return age > timedelta(hours=self.config.session_timeout_hours)

    def reusable_session(self, content: ContentDefinition) -> Optional[ContentSession]:
        """The content's latest session, if a start may continue it."""
        session = content.latest_session
        if session is None:
            return None
        if self.is_ended(session, content.type):
            return None
        if self.is_expired(session):
            logger.debug("Session %s for %s expired", session.id, content.content_id)
            return None
        if session.version_id and session.version_id != content.id:
            return None
        return session

    async def create(
        self, external_user_id: str, content: ContentDefinition, reason: Optional[str] = None
    ) -> Optional[ContentSession]:
        """Ask the server for a new session. Returns None on any failure."""
        try:
            session = await self.transport.create_session(
                external_user_id, content.content_id, content.id, reason
            )
        except Exception:
            logger.exception("Failed to create session for content %s", content.content_id)
            return None
        if not session:
            logger.error("Server returned no session for content %s", content.content_id)
            return None
        return session

    async def resolve(
        self, external_user_id: str, content: ContentDefinition, reason: Optional[str] = None
    ) -> Optional[ContentSession]:
        reusable = self.reusable_session(content)
        if reusable is not None:
            return reusable
        return await self.create(external_user_id, content, reason)

    async def report(
        self,
        external_user_id: str,
        session_id: str,
        event_name: str,
        data: Optional[Dict[str, Any]] = None,
        batch: bool = False,
    ) -> Any:
        """Send one session event. Failures are logged and return None."""
        try:
            result = await self.transport.track_event(
                external_user_id, session_id, event_name, data, batch
            )
        except Exception:
            logger.exception("Failed to report %s for session %s", event_name, session_id)
            return None
        if not result:
            logger.error("Server rejected %s for session %s", event_name, session_id)
            return None
        return result
