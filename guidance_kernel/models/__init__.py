"""Guidance kernel data models."""

from guidance_kernel.models.conditions import (
    ConditionType,
    ElementSelector,
    GroupCondition,
    Logic,
    RuleCondition,
    parse_conditions,
)
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import (
    BizEvent,
    BizEvents,
    ChecklistData,
    ChecklistItem,
    CompletionOrder,
    ContentAction,
    ContentActionType,
    ContentConfig,
    ContentDefinition,
    ContentEndReason,
    ContentPriority,
    ContentSession,
    ContentStartReason,
    ContentType,
    LauncherData,
    Step,
    StepTrigger,
    StepType,
    Theme,
)
from guidance_kernel.models.runtime import (
    ActionResult,
    ChecklistItemStatus,
    ContentState,
    WatcherState,
)
from guidance_kernel.models.store import (
    BaseSnapshot,
    ChecklistItemView,
    ChecklistSnapshot,
    LauncherSnapshot,
    TourSnapshot,
)
from guidance_kernel.models.user import CompanyInfo, ProjectSettings, SDKConfig, UserInfo

__all__ = [
    "ActionResult",
    "BaseSnapshot",
    "BizEvent",
    "BizEvents",
    "ChecklistData",
    "ChecklistItem",
    "ChecklistItemStatus",
    "ChecklistItemView",
    "ChecklistSnapshot",
    "CompanyInfo",
    "CompletionOrder",
    "ConditionType",
    "ContentAction",
    "ContentActionType",
    "ContentConfig",
    "ContentDefinition",
    "ContentEndReason",
    "ContentPriority",
    "ContentSession",
    "ContentStartReason",
    "ContentState",
    "ContentType",
    "ElementSelector",
    "GroupCondition",
    "KernelConfig",
    "LauncherData",
    "LauncherSnapshot",
    "Logic",
    "ProjectSettings",
    "RuleCondition",
    "SDKConfig",
    "Step",
    "StepTrigger",
    "StepType",
    "Theme",
    "TourSnapshot",
    "UserInfo",
    "WatcherState",
    "parse_conditions",
]
