"""Rule conditions — the declarative trees that decide when guidance starts or hides."""

from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models that arrive from the server with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Logic(str, Enum):
    AND = "and"
    OR = "or"


class ConditionType(str, Enum):
    GROUP = "group"
    CURRENT_PAGE = "current-page"
    TIME = "time"
    ELEMENT = "element"
    TEXT_INPUT = "text-input"
    TEXT_FILL = "text-fill"
    TASK_IS_CLICKED = "task-is-clicked"
    # Evaluated server side, the client only keeps the last known value
    USER_ATTR = "user-attr"
    SEGMENT = "segment"
    CONTENT = "content"
    EVENT = "event"


SERVER_CONDITION_TYPES = (
    ConditionType.USER_ATTR.value,
    ConditionType.SEGMENT.value,
    ConditionType.CONTENT.value,
    ConditionType.EVENT.value,
)


class ElementLogic(str, Enum):
    PRESENT = "present"
    UNPRESENT = "unpresent"
    DISABLED = "disabled"
    UNDISABLED = "undisabled"
    CLICKED = "clicked"
    UNCLICKED = "unclicked"


class TextInputLogic(str, Enum):
    IS = "is"
    NOT = "not"
    CONTAINS = "contains"
    NOT_CONTAIN = "notContain"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    MATCH = "match"
    UNMATCH = "unmatch"
    ANY = "any"
    EMPTY = "empty"


class ElementSelector(WireModel):
    """How a target element is located in the host page."""

    type: str = "auto"                      # "auto" | "manual"
    selectors: Optional[Any] = None         # Generated selector candidates
    custom_selector: Optional[str] = None   # Author-provided CSS selector
    content: Optional[str] = None           # Expected text content
    sequence: Optional[str] = None          # "1st", "2nd", ... among matches
    precision: Optional[str] = None
    selectors_list: List[str] = []


# --- Leaf payloads ---

class CurrentPageData(WireModel):
    includes: List[str] = []
    excludes: List[str] = []


class TimeData(WireModel):
    """Either ISO start/end times or the legacy MM/dd/yyyy + hour + minute fields."""

    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_date: Optional[str] = None
    start_date_hour: Optional[str] = None
    start_date_minute: Optional[str] = None
    end_date: Optional[str] = None
    end_date_hour: Optional[str] = None
    end_date_minute: Optional[str] = None
    schedule: Optional[str] = None          # Cron expression, must also match now


class ElementData(WireModel):
    element_data: ElementSelector = ElementSelector()
    logic: ElementLogic = ElementLogic.PRESENT


class TextInputData(WireModel):
    element_data: ElementSelector = ElementSelector()
    logic: TextInputLogic = TextInputLogic.IS
    value: str = ""


class TextFillData(WireModel):
    element_data: ElementSelector = ElementSelector()


# --- Nodes ---

class ConditionBase(WireModel):
    id: Optional[str] = None
    operators: Optional[Logic] = None       # Logic of the list this node belongs to
    actived: bool = False                   # Populated by the rule engine


class CurrentPageCondition(ConditionBase):
    type: Literal["current-page"] = "current-page"
    data: CurrentPageData = CurrentPageData()


class TimeCondition(ConditionBase):
    type: Literal["time"] = "time"
    data: TimeData = TimeData()


class ElementCondition(ConditionBase):
    type: Literal["element"] = "element"
    data: ElementData = ElementData()


class TextInputCondition(ConditionBase):
    type: Literal["text-input"] = "text-input"
    data: TextInputData = TextInputData()


class TextFillCondition(ConditionBase):
    type: Literal["text-fill"] = "text-fill"
    data: TextFillData = TextFillData()


class TaskIsClickedCondition(ConditionBase):
    type: Literal["task-is-clicked"] = "task-is-clicked"
    data: dict = {}


class ServerCondition(ConditionBase):
    """user-attr / segment / content / event: resolved by the server."""

    type: Literal["user-attr", "segment", "content", "event"]
    data: dict = {}


class UnknownCondition(ConditionBase):
    """A leaf whose tag this client does not model."""

    type: str
    data: Any = None


class GroupCondition(ConditionBase):
    type: Literal["group"] = "group"
    logic: Optional[Logic] = None
    data: dict = {}
    conditions: List["RuleCondition"] = []


_TAGGED = {
    ConditionType.GROUP.value,
    ConditionType.CURRENT_PAGE.value,
    ConditionType.TIME.value,
    ConditionType.ELEMENT.value,
    ConditionType.TEXT_INPUT.value,
    ConditionType.TEXT_FILL.value,
    ConditionType.TASK_IS_CLICKED.value,
}


def _condition_tag(value: Any) -> str:
    """Route a raw dict or a model instance to its union member."""
    tag = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if tag in _TAGGED:
        return tag
    if tag in SERVER_CONDITION_TYPES:
        return "server"
    return "unknown"


RuleCondition = Annotated[
    Union[
        Annotated[GroupCondition, Tag("group")],
        Annotated[CurrentPageCondition, Tag("current-page")],
        Annotated[TimeCondition, Tag("time")],
        Annotated[ElementCondition, Tag("element")],
        Annotated[TextInputCondition, Tag("text-input")],
        Annotated[TextFillCondition, Tag("text-fill")],
        Annotated[TaskIsClickedCondition, Tag("task-is-clicked")],
        Annotated[ServerCondition, Tag("server")],
        Annotated[UnknownCondition, Tag("unknown")],
    ],
    Discriminator(_condition_tag),
]

GroupCondition.model_rebuild()


class ConditionList(WireModel):
    """Wrapper used to validate bare lists of conditions."""

    conditions: List[RuleCondition] = Field(default_factory=list)


def parse_conditions(raw: List[Any]) -> List[Any]:
    """Validate a raw list of condition dicts into typed condition nodes."""
    return ConditionList.model_validate({"conditions": raw}).conditions
