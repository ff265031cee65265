"""Identified user, company and project-level settings."""

from typing import Any, Dict, List, Optional

from guidance_kernel.models.conditions import WireModel


class UserInfo(WireModel):
    external_id: str
    is_anonymous: bool = False
    data: Dict[str, Any] = {}


class CompanyInfo(WireModel):
    external_id: str
    data: Dict[str, Any] = {}
    membership: Dict[str, Any] = {}


class SDKConfig(WireModel):
    """Per-environment flags the server hands to the client."""

    remove_branding: bool = False
    plan_type: str = "hobby"


class ProjectSettings(WireModel):
    sdk_config: SDKConfig = SDKConfig()
    assets: List[Dict[str, Any]] = []
    themes: List[Any] = []
    custom_navigate: Optional[str] = None
