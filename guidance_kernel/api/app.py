"""
Guidance Kernel API — FastAPI endpoints for a headless host.

Exposes the orchestrator via a REST API for:
- Identifying the user and pushing contents and sessions
- Driving the scheduler (tick) and the manual clock
- Inspecting status and per-item snapshots
- Starting and dismissing content, clicking checklist tasks, activating launchers
- Manipulating the headless page (URL and elements)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from guidance_kernel.content.checklist import Checklist
from guidance_kernel.content.launcher import Launcher
from guidance_kernel.environment.headless import HeadlessEnvironment
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import (
    ContentDefinition,
    ContentEndReason,
    ContentSession,
    ContentStartReason,
)
from guidance_kernel.orchestrator.core import Orchestrator
from guidance_kernel.orchestrator.startup_queue import StartupQueue
from guidance_kernel.scheduler.clock import Clock, ManualClock
from guidance_kernel.transport.base import Transport
from guidance_kernel.transport.memory import InMemoryTransport


# --- Request/Response Models ---

class IdentifyRequest(BaseModel):
    external_id: Optional[str] = None
    attributes: Dict[str, Any] = {}


class StartRequest(BaseModel):
    step_cvid: Optional[str] = None


class DismissRequest(BaseModel):
    reason: ContentEndReason = ContentEndReason.USER_CLOSED


class AdvanceRequest(BaseModel):
    seconds: float
    ticks: bool = True


class PageRequest(BaseModel):
    url: str


class ElementRequest(BaseModel):
    selector: str
    text: str = ""
    value: str = ""
    visible: bool = True
    disabled: bool = False


class ElementUpdateRequest(BaseModel):
    text: Optional[str] = None
    value: Optional[str] = None
    visible: Optional[bool] = None
    disabled: Optional[bool] = None


# --- Application Factory ---

def create_app(
    environment: Optional[HeadlessEnvironment] = None,
    transport: Optional[Transport] = None,
    clock: Optional[Clock] = None,
    config: Optional[KernelConfig] = None,
    run_scheduler: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Host calls pushed onto `app.state.startup_queue` before the app starts
    are replayed against the orchestrator on startup. With `run_scheduler`
    the scheduler loop runs for the lifetime of the app.
    """

    # Initialize components
    clk = clock or ManualClock()
    env = environment or HeadlessEnvironment(clock=clk)
    tr = transport or InMemoryTransport(clock=clk)
    cfg = config or KernelConfig()
    orchestrator = Orchestrator(env, tr, cfg, clk)
    queue = StartupQueue(cfg.startup_queue_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.bind(orchestrator)
        stop = asyncio.Event()
        runner = asyncio.ensure_future(orchestrator.run(stop)) if run_scheduler else None
        try:
            yield
        finally:
            stop.set()
            if runner is not None:
                await runner

    app = FastAPI(
        title="Guidance Kernel API",
        description="In-product guidance engine, headless host",
        version="0.1.0-alpha",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.clock = clk
    app.state.environment = env
    app.state.transport = tr
    app.state.orchestrator = orchestrator
    app.state.startup_queue = queue

    def _item(content_id: str):
        item = orchestrator.get_item(content_id)
        if item is None:
            raise HTTPException(404, "Content not found")
        return item

    def _element(selector: str):
        matches = env.query(selector)
        if not matches:
            raise HTTPException(404, "Element not found")
        return matches[0]

    # === IDENTITY ===

    @app.post("/identify")
    async def identify(req: IdentifyRequest):
        """Identify the user and start the kernel."""
        if req.external_id:
            ok = await orchestrator.identify(req.external_id, req.attributes)
        else:
            ok = await orchestrator.identify_anonymous(req.attributes)
        if not ok:
            raise HTTPException(502, "Identify failed")
        return orchestrator.status()

    @app.post("/reset")
    async def reset():
        await orchestrator.reset()
        return orchestrator.status()

    # === CONTENTS AND SESSIONS ===

    @app.post("/contents")
    async def push_contents(contents: List[Dict[str, Any]]):
        """Replace the published contents and apply them."""
        definitions = [ContentDefinition.model_validate(c) for c in contents]
        if isinstance(tr, InMemoryTransport):
            tr.contents = list(definitions)
        await orchestrator.set_contents(definitions)
        await orchestrator.start_contents()
        return {"contents": [c.content_id for c in orchestrator.contents]}

    @app.get("/contents")
    def list_contents():
        return [c.to_wire() for c in orchestrator.contents]

    @app.post("/sessions")
    def push_session(session: Dict[str, Any]):
        """Merge a server-pushed session."""
        parsed = ContentSession.model_validate(session)
        if not orchestrator.refresh_content_session(parsed):
            raise HTTPException(404, "Content not found")
        return {"session_id": parsed.id}

    # === SCHEDULER ===

    @app.post("/tick")
    async def tick():
        report = await orchestrator.tick()
        return report.to_dict()

    @app.post("/clock/advance")
    async def advance(req: AdvanceRequest):
        """Move the manual clock, ticking at the monitor interval."""
        if not isinstance(clk, ManualClock):
            raise HTTPException(400, "Clock is not manual")
        if req.seconds < 0:
            raise HTTPException(400, "Cannot move time backwards")
        ticks = 0
        interval = orchestrator.config.monitor_interval_seconds
        remaining = req.seconds
        while req.ticks and remaining >= interval:
            await clk.advance(interval)
            await orchestrator.tick()
            remaining = round(remaining - interval, 9)
            ticks += 1
        await clk.advance(remaining)
        return {"ticks": ticks, "now": clk.now().isoformat()}

    @app.get("/status")
    def status():
        return orchestrator.status()

    # === CONTENT CONTROL ===

    @app.get("/contents/{content_id}/snapshot")
    def snapshot(content_id: str):
        item = _item(content_id)
        return {"status": item.status(), "snapshot": item.store.to_dict()}

    @app.post("/contents/{content_id}/start")
    async def start_content(content_id: str, req: StartRequest):
        if orchestrator.find_content(content_id) is None:
            raise HTTPException(404, "Content not found")
        started = await orchestrator.start_content(
            content_id, step_cvid=req.step_cvid, reason=ContentStartReason.START_FROM_MANUAL
        )
        return {"started": started, "status": orchestrator.status()}

    @app.post("/contents/{content_id}/dismiss")
    async def dismiss_content(content_id: str, req: DismissRequest):
        item = _item(content_id)
        await item.handle_dismiss(req.reason)
        return item.status()

    @app.post("/checklists/{content_id}/items/{item_id}/click")
    async def click_task(content_id: str, item_id: str):
        item = _item(content_id)
        if not isinstance(item, Checklist):
            raise HTTPException(400, "Content is not a checklist")
        if not await item.handle_item_click(item_id):
            raise HTTPException(404, "Checklist item not found")
        return item.store.to_dict()

    @app.post("/checklists/{content_id}/expand")
    async def expand_checklist(content_id: str, expanded: bool = True):
        item = _item(content_id)
        if not isinstance(item, Checklist):
            raise HTTPException(400, "Content is not a checklist")
        await item.handle_expanded_change(expanded)
        return item.store.to_dict()

    @app.post("/launchers/{content_id}/activate")
    async def activate_launcher(content_id: str):
        item = _item(content_id)
        if not isinstance(item, Launcher):
            raise HTTPException(400, "Content is not a launcher")
        return {"activated": await item.activate()}

    # === HEADLESS PAGE ===

    @app.post("/page")
    def set_page(req: PageRequest):
        env.url = req.url
        return {"url": env.current_url()}

    @app.get("/page/elements")
    def list_elements():
        return [e.to_dict() for e in env.elements()]

    @app.post("/page/elements")
    def add_element(req: ElementRequest):
        element = env.add_element(
            req.selector,
            text=req.text,
            value=req.value,
            visible=req.visible,
            disabled=req.disabled,
        )
        return element.to_dict()

    @app.patch("/page/elements/{selector}")
    def update_element(selector: str, req: ElementUpdateRequest):
        element = _element(selector)
        for field, value in req.model_dump(exclude_none=True).items():
            setattr(element, field, value)
        return element.to_dict()

    @app.post("/page/elements/{selector}/click")
    def click_element(selector: str):
        element = _element(selector)
        env.click(element)
        return element.to_dict()

    @app.delete("/page/elements/{selector}")
    def remove_element(selector: str):
        element = _element(selector)
        env.remove_element(element)
        return {"removed": selector}

    return app
