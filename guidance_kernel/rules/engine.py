"""
Rule Engine — evaluates condition trees against the live page.

`evaluate` returns an annotated copy of a tree (every node's `actived` set);
`is_satisfied` folds an annotated tree into a single verdict.

Leaf evaluation is dispatched through a handler table keyed by condition
type. The table is checked for exhaustiveness at construction, so a new
condition type cannot silently fall through. Leaves the client cannot
evaluate (server-side types, unknown tags) keep their last known value.

Stateful leaves:
  element/clicked   — a one-time click listener per element; once clicked, stays clicked
  text-fill         — typed, then idle for the debounce window with a changed value; sticky
Both caches are keyed weakly by element identity and dropped by `clear()`.
"""

import asyncio
import logging
import re
import weakref
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from croniter import croniter

from guidance_kernel.environment.base import Environment
from guidance_kernel.models.conditions import (
    SERVER_CONDITION_TYPES,
    ConditionType,
    ElementLogic,
    GroupCondition,
    Logic,
    TextInputLogic,
    TimeData,
)
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.rules.url_pattern import is_match_url_pattern
from guidance_kernel.scheduler.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

Overrides = Mapping[str, bool]
LeafHandler = Callable[[Any], Awaitable[bool]]


class _FillState:
    __slots__ = ("timestamp", "value", "active", "handler")

    def __init__(self, value: str, handler: Callable):
        self.timestamp: Optional[float] = None
        self.value = value
        self.active = False
        self.handler = handler


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_legacy(date: Optional[str], hour: Optional[str], minute: Optional[str]) -> Optional[datetime]:
    """MM/dd/yyyy plus separate hour and minute strings."""
    if not date or not hour or not minute:
        return None
    try:
        month, day, year = (int(p) for p in date.split("/"))
        return datetime(year, month, day, int(hour), int(minute), tzinfo=timezone.utc)
    except (ValueError, TypeError):
        return None


def _time_window(data: TimeData):
    if data.start_time or data.end_time:
        return _parse_iso(data.start_time), _parse_iso(data.end_time)
    start = _parse_legacy(data.start_date, data.start_date_hour, data.start_date_minute)
    end = _parse_legacy(data.end_date, data.end_date_hour, data.end_date_minute)
    return start, end


class RuleEngine:
    """Evaluates rule trees. One instance per orchestrator; shares element caches."""

    def __init__(
        self,
        environment: Environment,
        clock: Optional[Clock] = None,
        config: Optional[KernelConfig] = None,
    ):
        self.environment = environment
        self.clock = clock or SystemClock()
        self.config = config or KernelConfig()

        self._clicked: "weakref.WeakKeyDictionary[Any, bool]" = weakref.WeakKeyDictionary()
        self._click_handlers: "weakref.WeakKeyDictionary[Any, Callable]" = weakref.WeakKeyDictionary()
        self._fills: "weakref.WeakKeyDictionary[Any, _FillState]" = weakref.WeakKeyDictionary()

        self._handlers: Dict[str, LeafHandler] = {}
        self._register_default_handlers()
        self._check_exhaustive()

    def _register_default_handlers(self) -> None:
        self._handlers[ConditionType.CURRENT_PAGE.value] = self._eval_current_page
        self._handlers[ConditionType.TIME.value] = self._eval_time
        self._handlers[ConditionType.ELEMENT.value] = self._eval_element
        self._handlers[ConditionType.TEXT_INPUT.value] = self._eval_text_input
        self._handlers[ConditionType.TEXT_FILL.value] = self._eval_text_fill
        self._handlers[ConditionType.TASK_IS_CLICKED.value] = self._last_known
        for server_type in SERVER_CONDITION_TYPES:
            self._handlers[server_type] = self._last_known

    def _check_exhaustive(self) -> None:
        leaf_types = {t.value for t in ConditionType if t is not ConditionType.GROUP}
        missing = leaf_types - set(self._handlers)
        if missing:
            raise RuntimeError(f"No rule handler for condition types: {sorted(missing)}")

    def register_handler(self, condition_type: str, handler: LeafHandler) -> None:
        """Register or replace the evaluator for a leaf type."""
        self._handlers[condition_type] = handler

    # --- Evaluation ---

    async def evaluate(self, conditions: List[Any], overrides: Optional[Overrides] = None) -> List[Any]:
        """
        Evaluate a tree and return an annotated deep copy.

        Sibling sub-evaluations run concurrently and are joined before
        returning. `overrides` forces the named leaf types to active.
        """
        if not conditions:
            return []
        copies = [c.model_copy(deep=True) for c in conditions]
        await asyncio.gather(*(self._evaluate_node(c, overrides or {}) for c in copies))
        return copies

    async def _evaluate_node(self, node: Any, overrides: Overrides) -> None:
        if isinstance(node, GroupCondition):
            if node.conditions:
                await asyncio.gather(
                    *(self._evaluate_node(c, overrides) for c in node.conditions)
                )
            node.actived = self.is_satisfied(node.conditions, node.logic)
            return

        if overrides.get(node.type):
            node.actived = True
            return

        handler = self._handlers.get(node.type)
        if handler is None:
            logger.debug("Unknown condition type %r, keeping last known value", node.type)
            return
        try:
            node.actived = bool(await handler(node))
        except Exception:
            logger.exception("Condition %s (%s) failed to evaluate", node.id, node.type)
            node.actived = False

    @staticmethod
    def is_satisfied(conditions: List[Any], logic: Optional[str] = None) -> bool:
        """
        Fold an annotated tree into one verdict.

        The list logic is `logic` when given, else the first node's
        `operators`, else AND. An empty list is never satisfied.
        """
        if not conditions:
            return False
        resolved = Logic(logic or conditions[0].operators or Logic.AND)
        results = [RuleEngine._node_satisfied(c) for c in conditions]
        return all(results) if resolved == Logic.AND else any(results)

    @staticmethod
    def _node_satisfied(node: Any) -> bool:
        if isinstance(node, GroupCondition):
            return RuleEngine.is_satisfied(node.conditions, node.logic)
        return bool(node.actived)

    async def check(self, conditions: List[Any], overrides: Optional[Overrides] = None) -> bool:
        """Evaluate and fold in one call."""
        return self.is_satisfied(await self.evaluate(conditions, overrides))

    # --- Leaf handlers ---

    async def _last_known(self, node: Any) -> bool:
        return bool(node.actived)

    async def _eval_current_page(self, node: Any) -> bool:
        url = self.environment.current_url()
        return is_match_url_pattern(url, node.data.includes, node.data.excludes)

    async def _eval_time(self, node: Any) -> bool:
        data = node.data
        now = self.environment.now()
        start, end = _time_window(data)

        if start is None and not data.schedule:
            return False
        if start is not None:
            if now <= start:
                return False
            if end is not None and now >= end:
                return False
        elif data.end_time or data.end_date:
            return False

        if data.schedule:
            try:
                return bool(croniter.match(data.schedule, now))
            except (ValueError, KeyError):
                logger.warning("Invalid cron schedule %r on condition %s", data.schedule, node.id)
                return False
        return True

    async def _eval_element(self, node: Any) -> bool:
        element = self.environment.find_target(node.data.element_data)
        logic = node.data.logic

        if logic == ElementLogic.UNPRESENT:
            if element is None:
                return True
            return not await self.environment.is_visible(element)
        if element is None:
            return False

        if logic == ElementLogic.PRESENT:
            return await self.environment.is_visible(element)
        if logic == ElementLogic.DISABLED:
            return self.environment.is_disabled(element)
        if logic == ElementLogic.UNDISABLED:
            return not self.environment.is_disabled(element)
        if logic == ElementLogic.CLICKED:
            return self._is_clicked(element)
        if logic == ElementLogic.UNCLICKED:
            return not self._is_clicked(element)
        return False

    def _is_clicked(self, element: Any) -> bool:
        if element in self._clicked:
            return self._clicked[element]

        ref = weakref.ref(element)

        def on_click(_event=None) -> None:
            target = ref()
            if target is None:
                return
            self._clicked[target] = True
            handler = self._click_handlers.pop(target, None)
            if handler is not None:
                self.environment.remove_listener(target, "click", handler)

        self.environment.add_listener(element, "click", on_click)
        self._click_handlers[element] = on_click
        self._clicked[element] = False
        return False

    async def _eval_text_input(self, node: Any) -> bool:
        element = self.environment.find_target(node.data.element_data)
        if element is None:
            return False
        current = self.environment.get_value(element) or ""
        expected = node.data.value or ""
        logic = node.data.logic

        if logic == TextInputLogic.IS:
            return current == expected
        if logic == TextInputLogic.NOT:
            return current != expected
        if logic == TextInputLogic.CONTAINS:
            return expected in current
        if logic == TextInputLogic.NOT_CONTAIN:
            return expected not in current
        if logic == TextInputLogic.STARTS_WITH:
            return current.startswith(expected)
        if logic == TextInputLogic.ENDS_WITH:
            return current.endswith(expected)
        if logic in (TextInputLogic.MATCH, TextInputLogic.UNMATCH):
            try:
                found = re.search(expected, current) is not None
            except re.error:
                logger.warning("Invalid text-input pattern %r on condition %s", expected, node.id)
                return False
            return found if logic == TextInputLogic.MATCH else not found
        if logic == TextInputLogic.ANY:
            return True
        if logic == TextInputLogic.EMPTY:
            return not current
        return False

    async def _eval_text_fill(self, node: Any) -> bool:
        element = self.environment.find_target(node.data.element_data)
        if element is None:
            return False

        state = self._fills.get(element)
        if state is None:
            ref = weakref.ref(element)

            def on_keyup(event=None) -> None:
                target = ref()
                if target is None:
                    return
                if event and event.get("target") is not None and event["target"] is not target:
                    return
                fill = self._fills.get(target)
                if fill is not None and not fill.active:
                    fill.timestamp = self.clock.time()

            self.environment.add_listener(None, "keyup", on_keyup)
            self._fills[element] = _FillState(self.environment.get_value(element), on_keyup)
            return False

        if state.active:
            return True

        idle = state.timestamp is not None and (
            self.clock.time() - state.timestamp >= self.config.text_fill_debounce_seconds
        )
        if idle and state.value != self.environment.get_value(element):
            state.active = True
            self.environment.remove_listener(None, "keyup", state.handler)
            return True
        return False

    # --- Cache lifecycle ---

    def forget(self, element: Any) -> None:
        """Drop cached click and fill state for one element."""
        handler = self._click_handlers.pop(element, None)
        if handler is not None:
            self.environment.remove_listener(element, "click", handler)
        self._clicked.pop(element, None)
        fill = self._fills.pop(element, None)
        if fill is not None:
            self.environment.remove_listener(None, "keyup", fill.handler)

    def clear(self) -> None:
        """Release every element cache and the listeners installed for them."""
        for element in list(self._clicked.keys()):
            self.forget(element)
        for element in list(self._fills.keys()):
            self.forget(element)
        self._clicked.clear()
        self._click_handlers.clear()
        self._fills.clear()

    @property
    def cached_elements(self) -> int:
        return len(set(self._clicked.keys()) | set(self._fills.keys()))
