"""
Environment — the narrow seam between the kernel and the host page.

The kernel never touches concrete DOM or browser APIs; everything it needs
from the page goes through an Environment implementation.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from guidance_kernel.models.conditions import ElementSelector


class Storage(ABC):
    """Keyed persistence for anonymous ids and checklist expanded state."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...


class Environment(ABC):
    """Page capabilities consumed by rules, watchers and content items."""

    storage: Storage

    @abstractmethod
    def has_container(self) -> bool:
        """Whether the host page is ready to receive guidance."""

    @abstractmethod
    def find_target(self, selector: ElementSelector) -> Optional[Any]:
        """Resolve a selector to an element, or None."""

    @abstractmethod
    async def is_visible(self, element: Any) -> bool:
        """Best-effort occlusion and clipping check."""

    @abstractmethod
    def contains(self, element: Any) -> bool:
        """Whether the element is still attached to the page."""

    @abstractmethod
    def current_url(self) -> str:
        ...

    @abstractmethod
    def now(self) -> datetime:
        """Wall-clock time, timezone aware."""

    @abstractmethod
    def get_value(self, element: Any) -> str:
        ...

    @abstractmethod
    def is_disabled(self, element: Any) -> bool:
        ...

    @abstractmethod
    def add_listener(self, target: Any, event: str, handler: Callable) -> None:
        """Attach a handler. A target of None means the document."""

    @abstractmethod
    def remove_listener(self, target: Any, event: str, handler: Callable) -> None:
        ...

    def scroll_into_view(self, element: Any) -> None:
        return None

    def navigate(self, url: str, open_type: str = "same") -> None:
        raise NotImplementedError("navigation is not supported by this environment")

    def evaluate_script(self, code: str, context: dict) -> Any:
        raise NotImplementedError("script evaluation is not supported by this environment")
