"""Store snapshots — the UI-facing projection of a content item."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from guidance_kernel.models.content import ContentDefinition, Step, Theme
from guidance_kernel.models.user import SDKConfig, UserInfo


class ChecklistItemView(BaseModel):
    """One checklist row as the renderer sees it."""

    id: str
    name: str = ""
    is_completed: bool = False
    is_visible: bool = True
    is_clicked: bool = False
    is_show_animation: bool = False


class BaseSnapshot(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    open_state: bool = False
    theme: Optional[Theme] = None
    theme_settings: Dict[str, Any] = {}
    z_index: int = 0
    user_info: Optional[UserInfo] = None
    assets: List[Dict[str, Any]] = []
    sdk_config: SDKConfig = SDKConfig()
    content: Optional[ContentDefinition] = None


class TourSnapshot(BaseSnapshot):
    current_step: Optional[Step] = None
    progress: float = 0
    trigger_ref: Any = None                 # Resolved anchor element for tooltips


class ChecklistSnapshot(BaseSnapshot):
    expanded: bool = False
    items: List[ChecklistItemView] = []


class LauncherSnapshot(BaseSnapshot):
    trigger_ref: Any = None
