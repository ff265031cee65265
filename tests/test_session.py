"""Tests for the SessionCoordinator."""

from datetime import timedelta

import pytest

from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import (
    BizEvent,
    BizEventType,
    ContentDefinition,
    ContentSession,
    ContentType,
)
from guidance_kernel.scheduler.clock import ManualClock
from guidance_kernel.session.coordinator import SessionCoordinator
from guidance_kernel.transport.memory import InMemoryTransport


def _make_content(**kwargs) -> ContentDefinition:
    defaults = dict(id="v1", content_id="c1", type=ContentType.FLOW, steps=[{"cvid": "s1"}])
    defaults.update(kwargs)
    return ContentDefinition.model_validate(defaults)


def _make_session(clock, age_hours: float = 0, version_id: str = "v1", events=()):
    created = clock.now() - timedelta(hours=age_hours)
    return ContentSession(
        id="existing",
        content_id="c1",
        version_id=version_id,
        created_at=created,
        biz_event=[
            BizEvent(created_at=created, event=BizEventType(code_name=name))
            for name in events
        ],
    )


def _make_coordinator(timeout_hours: float = 24):
    clock = ManualClock()
    transport = InMemoryTransport(clock=clock)
    coordinator = SessionCoordinator(
        transport, clock, KernelConfig(session_timeout_hours=timeout_hours)
    )
    return coordinator, transport, clock


class TestReusableSession:
    def test_fresh_session_is_reused(self):
        coordinator, _, clock = _make_coordinator()
        content = _make_content(latest_session=_make_session(clock, age_hours=1))
        assert coordinator.reusable_session(content).id == "existing"

    def test_no_session(self):
        coordinator, _, _ = _make_coordinator()
        assert coordinator.reusable_session(_make_content()) is None

    def test_ended_session_is_not_reused(self):
        coordinator, _, clock = _make_coordinator()
        session = _make_session(clock, events=["flow_started", "flow_ended"])
        assert coordinator.reusable_session(_make_content(latest_session=session)) is None

    def test_end_event_depends_on_type(self):
        coordinator, _, clock = _make_coordinator()
        session = _make_session(clock, events=["flow_ended"])
        content = _make_content(type=ContentType.CHECKLIST, steps=[], latest_session=session)
        assert coordinator.reusable_session(content) is not None

    def test_expired_session_is_not_reused(self):
        coordinator, _, clock = _make_coordinator(timeout_hours=24)
        session = _make_session(clock, age_hours=25)
        assert coordinator.reusable_session(_make_content(latest_session=session)) is None

    def test_zero_timeout_never_expires(self):
        coordinator, _, clock = _make_coordinator(timeout_hours=0)
        session = _make_session(clock, age_hours=24 * 365)
        assert coordinator.reusable_session(_make_content(latest_session=session)) is not None

    def test_other_version_is_not_reused(self):
        coordinator, _, clock = _make_coordinator()
        session = _make_session(clock, version_id="v0")
        assert coordinator.reusable_session(_make_content(latest_session=session)) is None


class TestResolve:
    @pytest.mark.asyncio
    async def test_creates_when_not_reusable(self):
        coordinator, transport, _ = _make_coordinator()
        content = _make_content()
        transport.publish(content)

        session = await coordinator.resolve("u1", content, "start_from_condition")
        assert session is not None
        assert session.content_id == "c1"
        assert session.has_event("flow_started")
        assert transport.calls == ["create_session"]

    @pytest.mark.asyncio
    async def test_reuses_without_calling_server(self):
        coordinator, transport, clock = _make_coordinator()
        content = _make_content(latest_session=_make_session(clock))
        session = await coordinator.resolve("u1", content)
        assert session.id == "existing"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_server_failure_means_no_session(self):
        coordinator, transport, _ = _make_coordinator()
        content = _make_content()
        transport.publish(content)
        transport.fail_next("create_session")
        assert await coordinator.resolve("u1", content) is None


class TestReport:
    @pytest.mark.asyncio
    async def test_report_returns_updated_session(self):
        coordinator, transport, _ = _make_coordinator()
        content = _make_content()
        transport.publish(content)
        session = await coordinator.resolve("u1", content)

        updated = await coordinator.report("u1", session.id, "flow_step_seen", {"flow_step_cvid": "s1"})
        assert updated.has_event("flow_step_seen")
        assert transport.events_named("flow_step_seen")[0]["data"] == {"flow_step_cvid": "s1"}

    @pytest.mark.asyncio
    async def test_report_failure_returns_none(self):
        coordinator, transport, _ = _make_coordinator()
        transport.offline = True
        assert await coordinator.report("u1", "s", "flow_ended") is None
