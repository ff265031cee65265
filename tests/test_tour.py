"""Tests for Tour content items."""

import pytest

from guidance_kernel.environment.headless import HeadlessEnvironment
from guidance_kernel.events.bus import ContentEvent
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import (
    BizEvent,
    BizEventType,
    ContentDefinition,
    ContentEndReason,
    ContentSession,
)
from guidance_kernel.models.runtime import ContentState
from guidance_kernel.orchestrator.core import Orchestrator
from guidance_kernel.scheduler.clock import ManualClock
from guidance_kernel.transport.memory import InMemoryTransport


def _page(path: str) -> dict:
    return {"type": "current-page", "data": {"includes": [path]}}


def _tooltip(cvid: str, selector: str, **extra) -> dict:
    return {
        "cvid": cvid,
        "name": cvid,
        "type": "tooltip",
        "target": {"type": "manual", "customSelector": selector},
        **extra,
    }


def _modal(cvid: str, **extra) -> dict:
    return {"cvid": cvid, "name": cvid, "type": "modal", **extra}


def _make_tour(content_id: str = "t1", steps=None, config=None) -> ContentDefinition:
    return ContentDefinition.model_validate(
        {
            "id": f"{content_id}-v1",
            "contentId": content_id,
            "type": "flow",
            "steps": steps if steps is not None else [_modal("s1"), _modal("s2")],
            "config": config or {},
        }
    )


async def _make_kernel(*contents, sessions=(), **config):
    clock = ManualClock()
    env = HeadlessEnvironment(clock=clock)
    transport = InMemoryTransport(contents=list(contents), clock=clock)
    for session in sessions:
        transport.sessions[session.id] = session
    orchestrator = Orchestrator(env, transport, KernelConfig(**config), clock)
    assert await orchestrator.identify("user_1")
    return orchestrator, env, transport, clock


class TestTooltipTarget:
    @pytest.mark.asyncio
    async def test_missing_target_closes_with_reason(self):
        tour = _make_tour(steps=[_tooltip("s1", "#a"), _modal("s2")])
        orchestrator, _, transport, clock = await _make_kernel(tour, target_missing_seconds=6)
        item = orchestrator.tours["t1"]

        assert item.is_started is True
        assert item.store.get_snapshot().open_state is False

        await clock.advance(5.8)
        assert item.is_dismissed is False

        await clock.advance(0.2)
        assert item.is_dismissed is True
        assert item.end_reason == ContentEndReason.TOOLTIP_TARGET_MISSING
        assert item.is_destroyed is True
        assert orchestrator.active_tour is None

        assert len(transport.events_named("tooltip_target_missing")) == 1
        ended = transport.events_named("flow_ended")
        assert len(ended) == 1
        assert ended[0]["data"]["end_reason"] == "tooltip_target_missing"
        assert ended[0]["data"]["flow_step_cvid"] == "s1"

    @pytest.mark.asyncio
    async def test_found_target_opens_tooltip(self):
        tour = _make_tour(steps=[_tooltip("s1", "#a"), _modal("s2")])
        orchestrator, env, _, clock = await _make_kernel(tour)
        item = orchestrator.tours["t1"]

        await clock.advance(1.0)
        element = env.add_element("#a")
        await clock.advance(0.2)

        snapshot = item.store.get_snapshot()
        assert snapshot.open_state is True
        assert snapshot.trigger_ref is element
        assert item.state == ContentState.VISIBLE

        await clock.advance(10)
        assert item.is_dismissed is False

    @pytest.mark.asyncio
    async def test_target_hidden_too_long_closes(self):
        tour = _make_tour(steps=[_tooltip("s1", "#a"), _modal("s2")])
        orchestrator, env, _, clock = await _make_kernel(tour, target_missing_seconds=2)
        element = env.add_element("#a")
        await clock.settle()
        item = orchestrator.tours["t1"]
        assert item.state == ContentState.VISIBLE

        element.visible = False
        await orchestrator.tick()
        assert item.state == ContentState.TEMPORARILY_HIDDEN

        await clock.advance(2.0)
        await orchestrator.tick()
        assert item.end_reason == ContentEndReason.TOOLTIP_TARGET_MISSING


class TestNavigation:
    @pytest.mark.asyncio
    async def test_first_step_and_progress(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour())
        item = orchestrator.tours["t1"]

        snapshot = item.store.get_snapshot()
        assert snapshot.current_step.cvid == "s1"
        assert snapshot.progress == 50.0
        assert snapshot.open_state is True

        seen = transport.events_named("flow_step_seen")
        assert seen[0]["data"]["flow_step_number"] == 0
        assert transport.events_named("flow_completed") == []

    @pytest.mark.asyncio
    async def test_goto_last_step_reports_completion(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour())
        item = orchestrator.tours["t1"]
        changes = []
        item.bus.on(ContentEvent.STEP_CHANGED, lambda step: changes.append(step.cvid))

        await item.goto("s2")

        assert item.store.get_snapshot().progress == 100.0
        assert changes == ["s2"]
        assert len(transport.events_named("flow_completed")) == 1

    @pytest.mark.asyncio
    async def test_unknown_step_closes(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour())
        item = orchestrator.tours["t1"]

        await item.goto("missing")

        assert item.end_reason == ContentEndReason.STEP_NOT_FOUND
        assert item.is_destroyed is True

    @pytest.mark.asyncio
    async def test_resume_from_last_seen_step(self):
        clock = ManualClock()
        session = ContentSession(
            id="session_resume",
            content_id="t1",
            version_id="t1-v1",
            created_at=clock.now(),
            biz_event=[
                BizEvent(
                    created_at=clock.now(),
                    event=BizEventType(code_name="flow_step_seen"),
                    data={"flow_step_cvid": "s2", "flow_step_number": 1},
                )
            ],
        )
        orchestrator, _, transport, _ = await _make_kernel(_make_tour(), sessions=[session])
        item = orchestrator.tours["t1"]

        assert item.session_id == "session_resume"
        assert item.start_reason == "start_from_session"
        assert item.current_step.cvid == "s2"
        assert "create_session" not in transport.calls


class TestTriggers:
    @pytest.mark.asyncio
    async def test_trigger_fires_once_per_step_entry(self):
        trigger = {
            "id": "go-next",
            "conditions": [_page("/done")],
            "actions": [{"type": "step-goto", "data": {"stepCvid": "s2"}}],
        }
        tour = _make_tour(steps=[_modal("s1", trigger=[trigger]), _modal("s2")])
        orchestrator, env, _, _ = await _make_kernel(tour)
        item = orchestrator.tours["t1"]

        await orchestrator.tick()
        assert item.current_step.cvid == "s1"
        assert len(item.pending_triggers) == 1

        env.url = "https://app.example.com/done"
        await orchestrator.tick()
        assert item.current_step.cvid == "s2"
        assert item.pending_triggers == []

    @pytest.mark.asyncio
    async def test_trigger_wait_delays_actions(self):
        trigger = {
            "id": "later",
            "conditions": [_page("/*")],
            "actions": [{"type": "step-goto", "data": {"stepCvid": "s2"}}],
            "wait": 3,
        }
        tour = _make_tour(steps=[_modal("s1", trigger=[trigger]), _modal("s2")])
        orchestrator, _, _, clock = await _make_kernel(tour)
        item = orchestrator.tours["t1"]

        await orchestrator.tick()
        assert item.current_step.cvid == "s1"

        await clock.advance(3)
        assert item.current_step.cvid == "s2"

    @pytest.mark.asyncio
    async def test_hidden_step_stays_closed(self):
        tour = _make_tour(steps=[{"cvid": "h1", "type": "hidden"}, _modal("s2")])
        orchestrator, _, _, _ = await _make_kernel(tour)
        item = orchestrator.tours["t1"]

        await orchestrator.tick()
        assert item.state == ContentState.VISIBLE
        assert item.store.get_snapshot().open_state is False


class TestHideRules:
    @pytest.mark.asyncio
    async def test_hide_rules_pause_without_ending(self):
        config = {"enabledHideRules": True, "hideRules": [_page("/private")]}
        orchestrator, env, transport, _ = await _make_kernel(_make_tour(config=config))
        item = orchestrator.tours["t1"]

        env.url = "https://app.example.com/private"
        await orchestrator.tick()
        assert item.state == ContentState.TEMPORARILY_HIDDEN
        assert item.store.get_snapshot().open_state is False

        env.url = "https://app.example.com/"
        await orchestrator.tick()
        assert item.state == ContentState.VISIBLE
        assert item.store.get_snapshot().open_state is True
        assert transport.events_named("flow_ended") == []
