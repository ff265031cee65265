"""
Snapshot Store — push-notify / pull-value container shared with the renderer.

Written by: Content items (after every state transition)
Read by: The rendering layer, the control API and tests
"""

import logging
from typing import Callable, Generic, List, Optional, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=BaseModel)


class Store(Generic[S]):
    """
    Holds the latest snapshot of one content item.

    Producers replace (`set_data`) or merge (`update`) the snapshot; consumers
    subscribe and re-read with `get_snapshot` when notified. Listeners are
    only notified when the snapshot actually changed.
    """

    def __init__(self, default_factory: Callable[[], S]):
        self._default_factory = default_factory
        self._snapshot: S = default_factory()
        self._listeners: List[Callable[[], None]] = []

    def get_snapshot(self) -> S:
        """Get the current snapshot."""
        return self._snapshot

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_data(self, snapshot: Optional[S]) -> bool:
        """Replace the snapshot wholesale. None resets to the default."""
        if snapshot is None:
            snapshot = self._default_factory()
        if snapshot == self._snapshot:
            return False
        self._snapshot = snapshot
        self._notify()
        return True

    def update(self, **fields) -> bool:
        """Merge fields into the current snapshot."""
        changed = {
            k: v for k, v in fields.items() if getattr(self._snapshot, k) != v
        }
        if not changed:
            return False
        self._snapshot = self._snapshot.model_copy(update=changed)
        self._notify()
        return True

    def reset(self) -> bool:
        """Return to the default snapshot."""
        return self.set_data(None)

    def to_dict(self) -> dict:
        """Serializable view of the current snapshot."""
        return self._snapshot.model_dump(mode="json", exclude={"trigger_ref"})

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Store listener failed")
