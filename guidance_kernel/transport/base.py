"""
Transport — the async RPC seam to the guidance server.

Every call resolves to a result or to None/False; a falsy result (or a raised
exception) means the call failed and the caller treats the operation as a
no-op for this cycle.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from guidance_kernel.models.content import ContentDefinition, ContentSession, Theme
from guidance_kernel.models.user import CompanyInfo, ProjectSettings, UserInfo


class Transport(ABC):
    @abstractmethod
    async def upsert_user(
        self, external_id: str, attributes: Dict[str, Any], is_anonymous: bool = False
    ) -> Optional[UserInfo]:
        ...

    @abstractmethod
    async def upsert_company(
        self,
        external_user_id: str,
        external_company_id: str,
        attributes: Dict[str, Any],
        membership: Optional[Dict[str, Any]] = None,
    ) -> Optional[CompanyInfo]:
        ...

    @abstractmethod
    async def list_contents(self, external_user_id: str) -> Optional[List[ContentDefinition]]:
        ...

    @abstractmethod
    async def list_themes(self) -> Optional[List[Theme]]:
        ...

    @abstractmethod
    async def get_project_settings(self) -> Optional[ProjectSettings]:
        ...

    @abstractmethod
    async def create_session(
        self,
        external_user_id: str,
        content_id: str,
        version_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[ContentSession]:
        ...

    @abstractmethod
    async def track_event(
        self,
        external_user_id: str,
        session_id: str,
        event_name: str,
        data: Optional[Dict[str, Any]] = None,
        batch: bool = False,
    ) -> Any:
        """Report a session event. Returns the updated session, True, or a falsy failure."""
