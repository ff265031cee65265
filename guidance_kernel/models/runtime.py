"""Runtime state owned by content items and their watchers."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ContentState(str, Enum):
    IDLE = "idle"
    WAITING_TO_START = "waiting_to_start"
    STARTED = "started"
    VISIBLE = "visible"
    TEMPORARILY_HIDDEN = "temporarily_hidden"
    DISMISSED = "dismissed"
    DESTROYED = "destroyed"


class WatcherState(BaseModel):
    """What an element watcher currently knows about its target."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    element: Any = None
    retry_count: int = 0
    hidden_since: Optional[float] = None    # Clock seconds of first hidden observation
    is_timeout: bool = False


class ChecklistItemStatus(BaseModel):
    clicked: bool = False
    completed: bool = False
    visible: bool = True
    show_animation: bool = False


class ActionResult(BaseModel):
    """Outcome of running one list of content actions."""

    completed: list = []
    failed: list = []
    success: bool = True
    started_at: Optional[datetime] = None
