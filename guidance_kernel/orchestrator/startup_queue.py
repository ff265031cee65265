"""
Startup queue — holds host calls made before the orchestrator exists.

Calls are replayed in order once the orchestrator binds. The queue is
bounded; calls beyond the bound are dropped with a warning.
"""

import inspect
import logging
from collections import deque
from typing import Any, Deque, List, Optional, Tuple

logger = logging.getLogger(__name__)


class StartupQueue:
    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._calls: Deque[Tuple[str, tuple, dict]] = deque()
        self._target: Optional[Any] = None
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._calls)

    @property
    def is_bound(self) -> bool:
        return self._target is not None

    def push(self, method: str, *args, **kwargs) -> bool:
        """Queue a call. Returns False when the queue is full."""
        if len(self._calls) >= self.maxsize:
            self.dropped += 1
            logger.warning("Startup queue full, dropping call to %s", method)
            return False
        self._calls.append((method, args, kwargs))
        return True

    async def call(self, method: str, *args, **kwargs) -> Any:
        """Call through when bound, otherwise queue."""
        if self._target is None:
            self.push(method, *args, **kwargs)
            return None
        return await self._invoke(method, args, kwargs)

    async def bind(self, target: Any) -> List[Any]:
        """Attach the orchestrator and replay every queued call in order."""
        self._target = target
        results = []
        while self._calls:
            method, args, kwargs = self._calls.popleft()
            try:
                results.append(await self._invoke(method, args, kwargs))
            except Exception:
                logger.exception("Queued call to %s failed", method)
                results.append(None)
        return results

    async def _invoke(self, method: str, args: tuple, kwargs: dict) -> Any:
        handler = getattr(self._target, method, None)
        if handler is None:
            raise AttributeError(f"Unknown orchestrator operation: {method}")
        result = handler(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
