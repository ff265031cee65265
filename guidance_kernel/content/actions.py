"""
Action Dispatcher — runs author-configured actions for steps, triggers,
checklist tasks and launchers.

Behavioral contract:
- Each action is isolated: one failing action is recorded and logged, the rest still run
- Page navigation always runs last, after every other action in the list
- Actions that need the content item (goto, start, dismiss) call back into it
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List

from guidance_kernel.environment.base import Environment
from guidance_kernel.models.content import ContentAction, ContentActionType, ContentEndReason
from guidance_kernel.models.runtime import ActionResult

logger = logging.getLogger(__name__)

Executor = Callable[[ContentAction, Any], Awaitable[Any]]


class ActionExecutionError(Exception):
    """Raised when an action cannot be carried out."""
    pass


def _navigate_url(data: Dict[str, Any]) -> str:
    value = data.get("url") or data.get("value")
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        # Rich-text URL: concatenate the text leaves
        parts: List[str] = []

        def walk(nodes):
            for node in nodes:
                if isinstance(node, dict):
                    if "text" in node:
                        parts.append(str(node["text"]))
                    walk(node.get("children", []))

        walk(value)
        return "".join(parts)
    return ""


class ActionDispatcher:
    def __init__(self, environment: Environment):
        self.environment = environment
        self._executors: Dict[str, Executor] = {}
        self._register_default_executors()

    def _register_default_executors(self) -> None:
        self._executors[ContentActionType.STEP_GOTO.value] = self._step_goto
        self._executors[ContentActionType.FLOW_START.value] = self._flow_start
        self._executors[ContentActionType.FLOW_DISMIS.value] = self._dismiss
        self._executors[ContentActionType.CHECKLIST_DISMIS.value] = self._dismiss
        self._executors[ContentActionType.LAUNCHER_DISMIS.value] = self._dismiss
        self._executors[ContentActionType.PAGE_NAVIGATE.value] = self._page_navigate
        self._executors[ContentActionType.JAVASCRIPT_EVALUATE.value] = self._javascript_evaluate

    def register_executor(self, action_type: str, executor: Executor) -> None:
        """Register a custom executor for an action type."""
        self._executors[action_type] = executor

    async def execute(self, actions: List[ContentAction], item: Any) -> ActionResult:
        """Run a list of actions on behalf of a content item."""
        started_at = datetime.now(timezone.utc)
        navigate = [a for a in actions if a.type == ContentActionType.PAGE_NAVIGATE]
        others = [a for a in actions if a.type != ContentActionType.PAGE_NAVIGATE]

        completed = []
        failed = []
        for action in others + navigate:
            result = await self._dispatch_action(action, item)
            if result["success"]:
                completed.append(result)
            else:
                failed.append(result)

        return ActionResult(
            completed=completed,
            failed=failed,
            success=len(failed) == 0,
            started_at=started_at,
        )

    async def _dispatch_action(self, action: ContentAction, item: Any) -> dict:
        executor = self._executors.get(action.type.value)
        if executor is None:
            return {
                "action_type": action.type.value,
                "success": False,
                "error": f"No executor registered for action type: {action.type.value}",
            }
        try:
            data = await executor(action, item)
        except Exception as e:
            logger.exception("Action %s failed", action.type.value)
            return {"action_type": action.type.value, "success": False, "error": str(e)}
        return {"action_type": action.type.value, "success": True, "data": data}

    # --- Executors ---

    async def _step_goto(self, action: ContentAction, item: Any) -> dict:
        cvid = action.data.get("stepCvid") or action.data.get("step_cvid")
        if not cvid:
            raise ActionExecutionError("step-goto without a step")
        if not hasattr(item, "goto"):
            raise ActionExecutionError("step-goto is only valid for tours")
        await item.goto(cvid)
        return {"step_cvid": cvid}

    async def _flow_start(self, action: ContentAction, item: Any) -> dict:
        content_id = action.data.get("contentId") or action.data.get("content_id")
        if not content_id:
            raise ActionExecutionError("flow-start without a content")
        step_cvid = action.data.get("stepCvid") or action.data.get("step_cvid")
        started = await item.start_new_content(content_id, step_cvid)
        return {"content_id": content_id, "started": bool(started)}

    async def _dismiss(self, action: ContentAction, item: Any) -> dict:
        await item.close(ContentEndReason.ACTION_DISMISS)
        return {"dismissed": item.content.content_id}

    async def _page_navigate(self, action: ContentAction, item: Any) -> dict:
        url = _navigate_url(action.data)
        if not url:
            raise ActionExecutionError("page-navigate without a URL")
        open_type = action.data.get("openType") or action.data.get("open_type") or "same"
        self.environment.navigate(url, open_type)
        return {"url": url, "open_type": open_type}

    async def _javascript_evaluate(self, action: ContentAction, item: Any) -> dict:
        code = action.data.get("value")
        if not code:
            raise ActionExecutionError("javascript-evaluate without code")
        result = self.environment.evaluate_script(code, {"content_id": item.content.content_id})
        return {"result": result}
