"""
Headless environment — an in-memory page for tests and the headless host.

Elements are registered under the selectors that should resolve them.
Clicks and typing are simulated by dispatching to registered listeners.
"""

import logging
import re
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from guidance_kernel.environment.base import Environment, Storage
from guidance_kernel.models.conditions import ElementSelector
from guidance_kernel.scheduler.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class MemoryStorage(Storage):
    def __init__(self):
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class HeadlessElement:
    """A page element. Identity matters: rule caches are keyed by instance."""

    def __init__(
        self,
        selector: str,
        text: str = "",
        value: str = "",
        visible: bool = True,
        disabled: bool = False,
    ):
        self.selector = selector
        self.text = text
        self.value = value
        self.visible = visible
        self.disabled = disabled
        self.attached = True

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "text": self.text,
            "value": self.value,
            "visible": self.visible,
            "disabled": self.disabled,
            "attached": self.attached,
        }

    def __repr__(self) -> str:
        return f"HeadlessElement({self.selector!r})"


_SEQUENCE = re.compile(r"^(\d+)")


class HeadlessEnvironment(Environment):
    def __init__(
        self,
        url: str = "https://app.example.com/",
        clock: Optional[Clock] = None,
        storage: Optional[Storage] = None,
        container: bool = True,
    ):
        self.url = url
        self.clock = clock or SystemClock()
        self.storage = storage or MemoryStorage()
        self.container = container
        self._elements: List[HeadlessElement] = []
        self._listeners: Dict[Tuple[int, str], List[Callable]] = defaultdict(list)
        self.navigations: List[Tuple[str, str]] = []
        self.scripts: List[str] = []

    # --- Page manipulation ---

    def add_element(self, selector: str, **attrs) -> HeadlessElement:
        element = HeadlessElement(selector, **attrs)
        self._elements.append(element)
        return element

    def remove_element(self, element: HeadlessElement) -> None:
        element.attached = False
        if element in self._elements:
            self._elements.remove(element)

    def replace_element(self, element: HeadlessElement) -> HeadlessElement:
        """Simulate a client-side re-render: same selector, new identity."""
        self.remove_element(element)
        return self.add_element(
            element.selector,
            text=element.text,
            value=element.value,
            visible=element.visible,
            disabled=element.disabled,
        )

    def elements(self) -> List[HeadlessElement]:
        return list(self._elements)

    def query(self, selector: str) -> List[HeadlessElement]:
        return [e for e in self._elements if e.selector == selector]

    def click(self, element: HeadlessElement) -> None:
        self._dispatch(element, "click", {"target": element})
        self._dispatch(None, "click", {"target": element})

    def type_text(self, element: HeadlessElement, value: str) -> None:
        element.value = value
        self._dispatch(element, "keyup", {"target": element})
        self._dispatch(None, "keyup", {"target": element})

    def _dispatch(self, target: Any, event: str, payload: dict) -> None:
        for handler in list(self._listeners.get((id(target), event), [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("Listener for %s failed", event)

    # --- Environment ---

    def has_container(self) -> bool:
        return self.container

    def find_target(self, selector: ElementSelector) -> Optional[HeadlessElement]:
        if selector is None:
            return None
        candidates = self._candidates(selector)
        for candidate in candidates:
            matches = self.query(candidate)
            if selector.content:
                matches = [m for m in matches if m.text.strip() == selector.content.strip()]
            if not matches:
                continue
            index = 0
            if selector.sequence:
                found = _SEQUENCE.match(selector.sequence)
                if found:
                    index = int(found.group(1)) - 1
            if 0 <= index < len(matches):
                return matches[index]
        return None

    def _candidates(self, selector: ElementSelector) -> List[str]:
        if selector.type == "manual":
            return [selector.custom_selector] if selector.custom_selector else []
        candidates = list(selector.selectors_list)
        if isinstance(selector.selectors, list):
            candidates.extend(s for s in selector.selectors if isinstance(s, str))
        elif isinstance(selector.selectors, str):
            candidates.append(selector.selectors)
        if selector.custom_selector:
            candidates.append(selector.custom_selector)
        return candidates

    async def is_visible(self, element: Any) -> bool:
        return bool(element is not None and element.attached and element.visible)

    def contains(self, element: Any) -> bool:
        return element is not None and element.attached and element in self._elements

    def current_url(self) -> str:
        return self.url

    def now(self) -> datetime:
        return self.clock.now()

    def get_value(self, element: Any) -> str:
        return element.value or ""

    def is_disabled(self, element: Any) -> bool:
        return bool(element.disabled)

    def add_listener(self, target: Any, event: str, handler: Callable) -> None:
        handlers = self._listeners[(id(target), event)]
        if handler not in handlers:
            handlers.append(handler)

    def remove_listener(self, target: Any, event: str, handler: Callable) -> None:
        handlers = self._listeners.get((id(target), event))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, target: Any, event: str) -> int:
        return len(self._listeners.get((id(target), event), []))

    def navigate(self, url: str, open_type: str = "same") -> None:
        self.navigations.append((url, open_type))
        if open_type == "same":
            self.url = url

    def evaluate_script(self, code: str, context: dict) -> Any:
        self.scripts.append(code)
        return None
