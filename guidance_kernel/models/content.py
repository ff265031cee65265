"""Content definitions — server-authored tours, checklists and launchers."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from guidance_kernel.models.conditions import ElementSelector, RuleCondition, WireModel


class ContentType(str, Enum):
    FLOW = "flow"                           # A tour
    CHECKLIST = "checklist"
    LAUNCHER = "launcher"


class ContentPriority(str, Enum):
    HIGHEST = "highest"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    LOWEST = "lowest"


PRIORITY_ORDER = [
    ContentPriority.HIGHEST,
    ContentPriority.HIGH,
    ContentPriority.MEDIUM,
    ContentPriority.LOW,
    ContentPriority.LOWEST,
]


class Frequency(str, Enum):
    ONCE = "once"
    MULTIPLE = "multiple"
    UNLIMITED = "unlimited"


class FrequencyUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class StepType(str, Enum):
    TOOLTIP = "tooltip"
    MODAL = "modal"
    HIDDEN = "hidden"
    BUBBLE = "bubble"


class ContentActionType(str, Enum):
    STEP_GOTO = "step-goto"
    FLOW_START = "flow-start"
    FLOW_DISMIS = "flow-dismis"
    CHECKLIST_DISMIS = "checklist-dismis"
    LAUNCHER_DISMIS = "launcher-dismis"
    PAGE_NAVIGATE = "page-navigate"
    JAVASCRIPT_EVALUATE = "javascript-evaluate"


class CompletionOrder(str, Enum):
    ANY = "any"
    SEQUENTIAL = "ordered"

    @classmethod
    def _missing_(cls, value):
        if value == "sequential":
            return cls.SEQUENTIAL
        return None


class ChecklistInitialDisplay(str, Enum):
    EXPANDED = "expanded"
    BUTTON = "button"


class LauncherTriggerEvent(str, Enum):
    CLICKED = "clicked"
    HOVERED = "hovered"


class BizEvents(str, Enum):
    PAGE_VIEWED = "page_viewed"
    FLOW_STEP_SEEN = "flow_step_seen"
    FLOW_COMPLETED = "flow_completed"
    FLOW_STARTED = "flow_started"
    FLOW_ENDED = "flow_ended"
    TOOLTIP_TARGET_MISSING = "tooltip_target_missing"
    FLOW_STEP_COMPLETED = "flow_step_completed"
    LAUNCHER_ACTIVATED = "launcher_activated"
    LAUNCHER_DISMISSED = "launcher_dismissed"
    LAUNCHER_SEEN = "launcher_seen"
    CHECKLIST_COMPLETED = "checklist_completed"
    CHECKLIST_DISMISSED = "checklist_dismissed"
    CHECKLIST_HIDDEN = "checklist_hidden"
    CHECKLIST_SEEN = "checklist_seen"
    CHECKLIST_STARTED = "checklist_started"
    CHECKLIST_TASK_CLICKED = "checklist_task_clicked"
    CHECKLIST_TASK_COMPLETED = "checklist_task_completed"


# Events that mark a session as ended, per content type
END_EVENTS = {
    ContentType.FLOW: BizEvents.FLOW_ENDED,
    ContentType.CHECKLIST: BizEvents.CHECKLIST_DISMISSED,
    ContentType.LAUNCHER: BizEvents.LAUNCHER_DISMISSED,
}

START_EVENTS = {
    ContentType.FLOW: BizEvents.FLOW_STARTED,
    ContentType.CHECKLIST: BizEvents.CHECKLIST_STARTED,
}


class ContentStartReason(str, Enum):
    START_FROM_CONDITION = "start_from_condition"
    START_FROM_URL = "start_from_url"
    START_FROM_SESSION = "start_from_session"
    START_FROM_MANUAL = "start_from_manual"
    START_FROM_PROGRAM = "start_from_program"
    START_FROM_CONTENT_ID = "start_from_content_id"
    START_FROM_ACTION = "start_from_action"


class ContentEndReason(str, Enum):
    USER_CLOSED = "user_closed"
    ACTION = "action"
    REPLACED = "replaced"
    TOOLTIP_TARGET_MISSING = "tooltip_target_missing"
    SYSTEM_CLOSED = "system_closed"
    AUTO_DISMISSED = "auto_dismissed"
    CONTENT_NOT_FOUND = "content_not_found"
    SESSION_TIMEOUT = "session_timeout"
    URL_START_CLOSED = "url_start_closed"
    USER_STARTED_OTHER_CONTENT = "user_started_other_content"
    PROGRAM_STARTED_OTHER_CONTENT = "program_started_other_content"
    STEP_NOT_FOUND = "step_not_found"
    UNPUBLISHED_CONTENT = "unpublished_content"
    END_FROM_PROGRAM = "end_from_program"
    LAUNCHER_DEACTIVATED = "launcher_deactivated"
    CLOSE_BUTTON_DISMISS = "close_button_dismiss"
    BACKDROP_DISMISS = "backdrop_dismiss"
    DISMISS_BUTTON = "dismiss_button"
    TRIGGER_DISMISS = "trigger_dismiss"
    ACTION_DISMISS = "action_dismiss"
    STORE_NOT_FOUND = "store_not_found"


# --- Sessions ---

class BizEventType(WireModel):
    code_name: str


class BizEvent(WireModel):
    id: Optional[str] = None
    created_at: datetime
    event: Optional[BizEventType] = None
    data: Dict[str, Any] = {}

    @property
    def code_name(self) -> Optional[str]:
        return self.event.code_name if self.event else None


class ContentSession(WireModel):
    """A server-tracked run of one user through one piece of content."""

    id: str
    content_id: str
    version_id: Optional[str] = None
    created_at: datetime
    biz_event: List[BizEvent] = []

    def events_named(self, code_name: str) -> List[BizEvent]:
        return [e for e in self.biz_event if e.code_name == code_name]

    def latest_event(self, *code_names: str) -> Optional[BizEvent]:
        matching = [e for e in self.biz_event if e.code_name in code_names]
        if not matching:
            return None
        return max(matching, key=lambda e: e.created_at)

    def has_event(self, code_name: str) -> bool:
        return any(e.code_name == code_name for e in self.biz_event)


# --- Content configuration ---

class FrequencyEvery(WireModel):
    times: Optional[int] = None
    duration: int = 0
    unit: FrequencyUnit = FrequencyUnit.SECONDS


class FrequencyAtLeast(WireModel):
    duration: int = 0
    unit: FrequencyUnit = FrequencyUnit.SECONDS


class FrequencySetting(WireModel):
    frequency: Frequency = Frequency.ONCE
    every: Optional[FrequencyEvery] = None
    at_least: Optional[FrequencyAtLeast] = None


class AutoStartSetting(WireModel):
    priority: ContentPriority = ContentPriority.MEDIUM
    wait: float = 0                         # Seconds before auto-start
    frequency: Optional[FrequencySetting] = None
    start_if_not_complete: bool = False


class ContentConfig(WireModel):
    enabled_auto_start_rules: bool = False
    auto_start_rules: List[RuleCondition] = []
    enabled_hide_rules: bool = False
    hide_rules: List[RuleCondition] = []
    auto_start_rules_setting: AutoStartSetting = AutoStartSetting()
    hide_rules_setting: Dict[str, Any] = {}


# --- Actions ---

class ContentAction(WireModel):
    """An author-configured action; shares the condition wire shape."""

    id: Optional[str] = None
    type: ContentActionType
    data: Dict[str, Any] = {}
    operators: Optional[str] = None


# --- Tours ---

class StepTrigger(WireModel):
    id: str
    conditions: List[RuleCondition] = []
    actions: List[ContentAction] = []
    wait: Optional[float] = None


class Step(WireModel):
    id: Optional[str] = None
    cvid: str
    name: str = ""
    type: StepType = StepType.MODAL
    theme_id: Optional[str] = None
    target: Optional[ElementSelector] = None
    trigger: List[StepTrigger] = []
    sequence: int = 0
    setting: Dict[str, Any] = {}
    data: Any = None


# --- Checklists ---

class ChecklistItem(WireModel):
    id: str
    name: str = ""
    description: str = ""
    click_actions: List[ContentAction] = []
    complete_conditions: List[RuleCondition] = []
    only_show_task: bool = False
    only_show_task_conditions: List[RuleCondition] = []


class ChecklistData(WireModel):
    button_text: str = ""
    items: List[ChecklistItem] = []
    completion_order: CompletionOrder = CompletionOrder.ANY
    initial_display: ChecklistInitialDisplay = ChecklistInitialDisplay.EXPANDED
    auto_dismiss_checklist: bool = False
    prevent_dismiss_checklist: bool = False


# --- Launchers ---

class LauncherTarget(WireModel):
    element: Optional[ElementSelector] = None
    alignment: Dict[str, Any] = {}


class LauncherBehavior(WireModel):
    trigger_element: str = "launcher"       # "launcher" | "target"
    trigger_event: LauncherTriggerEvent = LauncherTriggerEvent.CLICKED
    action_type: str = "show-tooltip"       # "show-tooltip" | "perform-action"
    actions: List[ContentAction] = []


class LauncherTooltipSettings(WireModel):
    dismiss_after_first_activation: bool = False
    keep_tooltip_open_when_hovered: bool = False
    hide_launcher_when_tooltip_is_displayed: bool = False


class LauncherTooltip(WireModel):
    settings: LauncherTooltipSettings = LauncherTooltipSettings()
    content: Any = None


class LauncherData(WireModel):
    type: str = "beacon"
    z_index: Optional[int] = None
    target: LauncherTarget = LauncherTarget()
    behavior: LauncherBehavior = LauncherBehavior()
    tooltip: LauncherTooltip = LauncherTooltip()


# --- Themes ---

class ThemeVariation(WireModel):
    id: Optional[str] = None
    name: str = ""
    conditions: List[RuleCondition] = []
    settings: Dict[str, Any] = {}


class Theme(WireModel):
    id: str
    name: str = ""
    is_default: bool = False
    settings: Dict[str, Any] = {}
    variations: List[ThemeVariation] = []


# --- Content ---

class ContentDefinition(WireModel):
    """Immutable per version; replaced wholesale when the server pushes a new one."""

    id: str                                 # Version id
    content_id: str                         # Stable across versions
    type: ContentType
    name: str = ""
    theme_id: Optional[str] = None
    sequence: int = 0
    steps: List[Step] = []
    data: Any = None
    config: ContentConfig = ContentConfig()
    latest_session: Optional[ContentSession] = None
    completed_sessions: int = 0
    dismissed_sessions: int = 0
    total_sessions: int = 0

    @property
    def priority(self) -> ContentPriority:
        return self.config.auto_start_rules_setting.priority

    def checklist_data(self) -> ChecklistData:
        if isinstance(self.data, ChecklistData):
            return self.data
        return ChecklistData.model_validate(self.data or {})

    def launcher_data(self) -> LauncherData:
        if isinstance(self.data, LauncherData):
            return self.data
        return LauncherData.model_validate(self.data or {})

    def step_by_cvid(self, cvid: Optional[str]) -> Optional[Step]:
        if not cvid:
            return None
        return next((s for s in self.steps if s.cvid == cvid), None)

    def step_index(self, cvid: str) -> int:
        for index, step in enumerate(self.steps):
            if step.cvid == cvid:
                return index
        return -1


class ContentList(WireModel):
    contents: List[ContentDefinition] = Field(default_factory=list)
