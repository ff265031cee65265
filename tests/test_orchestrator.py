"""Tests for the Orchestrator: arbitration, identity, contents and the startup queue."""

import pytest

from guidance_kernel.environment.headless import HeadlessEnvironment
from guidance_kernel.events.bus import OrchestratorEvent
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.models.content import ContentDefinition, ContentEndReason, ContentSession
from guidance_kernel.models.runtime import ContentState
from guidance_kernel.orchestrator.core import ANONYMOUS_ID_KEY, Orchestrator
from guidance_kernel.orchestrator.startup_queue import StartupQueue
from guidance_kernel.scheduler.clock import ManualClock
from guidance_kernel.transport.memory import InMemoryTransport

HOME = "https://app.example.com/"


def _page(path: str) -> dict:
    return {"type": "current-page", "data": {"includes": [path]}}


def _make_tour(
    content_id: str, priority: str = "medium", steps=None, rules=None, **setting
) -> ContentDefinition:
    config = {"autoStartRulesSetting": {"priority": priority, **setting}}
    if rules is not None:
        config.update(enabledAutoStartRules=True, autoStartRules=rules)
    return ContentDefinition.model_validate(
        {
            "id": f"{content_id}-v1",
            "contentId": content_id,
            "type": "flow",
            "steps": steps or [{"cvid": "s1", "name": "s1", "type": "modal"}],
            "config": config,
        }
    )


def _make_checklist(content_id: str = "c1") -> ContentDefinition:
    present = {
        "type": "element",
        "data": {"elementData": {"type": "manual", "customSelector": "#done1"}},
    }
    return ContentDefinition.model_validate(
        {
            "id": f"{content_id}-v1",
            "contentId": content_id,
            "type": "checklist",
            "data": {"items": [{"id": "i1", "name": "i1", "completeConditions": [present]}]},
        }
    )


async def _make_kernel(*contents, url: str = HOME, identify: bool = True, **config):
    clock = ManualClock()
    env = HeadlessEnvironment(url=url, clock=clock)
    transport = InMemoryTransport(contents=list(contents), clock=clock)
    orchestrator = Orchestrator(env, transport, KernelConfig(**config), clock)
    if identify:
        assert await orchestrator.identify("user_1")
    return orchestrator, env, transport, clock


class TestTourArbitration:
    @pytest.mark.asyncio
    async def test_highest_priority_wins(self):
        orchestrator, _, _, _ = await _make_kernel(
            _make_tour("t_low", "low"), _make_tour("t_high", "high")
        )
        assert orchestrator.active_tour.content_id == "t_high"
        assert orchestrator.tours["t_low"].is_started is False

    @pytest.mark.asyncio
    async def test_equal_priority_keeps_list_order(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t_a"), _make_tour("t_b"))
        assert orchestrator.active_tour.content_id == "t_a"

    @pytest.mark.asyncio
    async def test_starting_other_tour_closes_previous(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1", "high"), _make_tour("t2"))
        first = orchestrator.active_tour

        assert await orchestrator.start_content("t2") is True

        assert first.end_reason == ContentEndReason.USER_STARTED_OTHER_CONTENT
        assert [t.content_id for t in orchestrator.visible_tours()] == ["t2"]

    @pytest.mark.asyncio
    async def test_same_tour_is_updated_in_place(self):
        steps = [{"cvid": "s1", "type": "modal"}, {"cvid": "s2", "type": "modal"}]
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1", steps=steps))
        tour = orchestrator.active_tour

        assert await orchestrator.start_content("t1", step_cvid="s2") is True
        assert orchestrator.active_tour is tour
        assert tour.current_step.cvid == "s2"
        assert transport.calls.count("create_session") == 1

    @pytest.mark.asyncio
    async def test_auto_start_rules_gate_tours(self):
        orchestrator, env, _, _ = await _make_kernel(_make_tour("t1", rules=[_page("/start")]))
        assert orchestrator.active_tour is None

        env.url = "https://app.example.com/start"
        await orchestrator.tick()
        await orchestrator.tick()
        assert orchestrator.active_tour.content_id == "t1"
        assert orchestrator.active_tour.is_started is True

    @pytest.mark.asyncio
    async def test_dismissed_tour_does_not_restart(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1"))
        await orchestrator.close_active_tour(ContentEndReason.USER_CLOSED)

        await orchestrator.tick()
        assert orchestrator.active_tour is None

        assert await orchestrator.start_content("t1") is True
        assert orchestrator.active_tour.content_id == "t1"

    @pytest.mark.asyncio
    async def test_restart_after_close_gets_new_session(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1"))
        assert await orchestrator.update_user({"plan": "pro"})
        ended_id = orchestrator.active_tour.session_id
        assert orchestrator.find_content("t1").latest_session.id == ended_id

        await orchestrator.close_active_tour(ContentEndReason.USER_CLOSED)
        assert orchestrator.find_content("t1").latest_session.has_event("flow_ended")

        assert await orchestrator.start_content("t1") is True
        assert orchestrator.active_tour.session_id != ended_id
        assert transport.calls.count("create_session") == 2

    @pytest.mark.asyncio
    async def test_unacknowledged_close_forgets_session(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1"))
        assert await orchestrator.update_user({"plan": "pro"})
        ended_id = orchestrator.active_tour.session_id

        transport.fail_next("track_event")
        await orchestrator.close_active_tour(ContentEndReason.USER_CLOSED)
        assert orchestrator.find_content("t1").latest_session is None

        assert await orchestrator.start_content("t1") is True
        assert orchestrator.active_tour.session_id != ended_id

    @pytest.mark.asyncio
    async def test_wait_delays_start_without_blocking(self):
        orchestrator, _, _, clock = await _make_kernel(
            _make_tour("t1", "high", wait=5), _make_tour("t2", "low")
        )
        tour = orchestrator.active_tour
        assert tour.content_id == "t1"
        assert tour.is_started is False

        await clock.advance(4.0)
        await orchestrator.tick()
        assert tour.state == ContentState.WAITING_TO_START
        assert orchestrator.tours["t2"].is_started is False

        await clock.advance(1.0)
        assert tour.is_started is True

    @pytest.mark.asyncio
    async def test_session_failure_releases_slot(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1"), identify=False)
        transport.fail_next("create_session")
        released = []
        orchestrator.bus.on(OrchestratorEvent.TOUR_RELEASED, released.append)

        assert await orchestrator.identify("user_1") is True
        assert orchestrator.active_tour is None
        assert orchestrator.tours["t1"].state == ContentState.IDLE
        assert len(released) == 1

        await orchestrator.tick()
        assert orchestrator.active_tour.is_started is True

    @pytest.mark.asyncio
    async def test_invariant_closes_extra_visible_tours(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1", "high"), _make_tour("t2"))
        rogue = orchestrator.tours["t2"]
        await rogue.start()
        assert len(orchestrator.visible_tours()) == 2

        assert await orchestrator.check_invariants() is False
        assert rogue.end_reason == ContentEndReason.SYSTEM_CLOSED
        assert [t.content_id for t in orchestrator.visible_tours()] == ["t1"]


class TestUrlStart:
    @pytest.mark.asyncio
    async def test_url_param_starts_content(self):
        orchestrator, _, _, _ = await _make_kernel(
            _make_tour("t1", "highest"), _make_tour("t2", "lowest"), url=f"{HOME}?usertour=t2"
        )
        tour = orchestrator.active_tour
        assert tour.content_id == "t2"
        assert tour.start_reason == "start_from_url"

    @pytest.mark.asyncio
    async def test_url_param_used_once_per_url(self):
        orchestrator, _, _, _ = await _make_kernel(
            _make_tour("t1", "highest"), _make_tour("t2", "lowest"), url=f"{HOME}?usertour=t2"
        )
        await orchestrator.close_active_tour()
        await orchestrator.tick()
        assert orchestrator.active_tour.content_id == "t1"

    @pytest.mark.asyncio
    async def test_url_start_replaces_active_tour(self):
        orchestrator, env, _, _ = await _make_kernel(_make_tour("t1", "high"), _make_tour("t2"))
        first = orchestrator.active_tour

        env.url = f"{HOME}?usertour=t2"
        await orchestrator.tick()

        assert first.end_reason == ContentEndReason.URL_START_CLOSED
        assert orchestrator.active_tour.content_id == "t2"


class TestChecklistAndTour:
    @pytest.mark.asyncio
    async def test_tour_collapses_unseen_checklist_silently(self):
        orchestrator, _, transport, clock = await _make_kernel(
            _make_checklist(), _make_tour("t1", rules=[_page("/never")])
        )
        checklist = orchestrator.active_checklist
        assert checklist.store.get_snapshot().expanded is True

        assert await orchestrator.start_content("t1") is True
        await clock.advance(1.0)

        assert checklist.store.get_snapshot().expanded is False
        assert transport.events_named("checklist_hidden") == []
        assert transport.events_named("checklist_seen") == []

        await orchestrator.close_active_tour()
        assert checklist.store.get_snapshot().expanded is True

    @pytest.mark.asyncio
    async def test_tour_dismissed_by_user_expands_checklist_at_once(self):
        orchestrator, _, _, _ = await _make_kernel(
            _make_checklist(), _make_tour("t1", rules=[_page("/never")])
        )
        checklist = orchestrator.active_checklist
        assert await orchestrator.start_content("t1") is True
        assert checklist.store.get_snapshot().expanded is False

        await orchestrator.active_tour.handle_dismiss(ContentEndReason.USER_CLOSED)
        await orchestrator.drain()

        assert orchestrator.active_tour is None
        assert checklist.store.get_snapshot().expanded is True

    @pytest.mark.asyncio
    async def test_tour_collapses_seen_checklist_with_hidden_event(self):
        orchestrator, _, transport, clock = await _make_kernel(
            _make_checklist(), _make_tour("t1", rules=[_page("/never")])
        )
        await clock.advance(0.2)
        assert len(transport.events_named("checklist_seen")) == 1

        await orchestrator.start_content("t1")
        assert len(transport.events_named("checklist_hidden")) == 1

    @pytest.mark.asyncio
    async def test_completions_during_tour_expand_afterwards(self):
        orchestrator, env, _, _ = await _make_kernel(
            _make_checklist(), _make_tour("t1", rules=[_page("/never")])
        )
        checklist = orchestrator.active_checklist
        await checklist.handle_expanded_change(False)

        await orchestrator.start_content("t1")
        env.add_element("#done1")
        await orchestrator.tick()
        assert checklist.item_status["i1"].completed is True
        assert checklist.store.get_snapshot().expanded is False

        await orchestrator.close_active_tour()
        assert checklist.store.get_snapshot().expanded is True

    @pytest.mark.asyncio
    async def test_collapsed_checklist_stays_collapsed_after_tour(self):
        orchestrator, _, _, _ = await _make_kernel(
            _make_checklist(), _make_tour("t1", rules=[_page("/never")])
        )
        checklist = orchestrator.active_checklist
        await checklist.handle_expanded_change(False)

        await orchestrator.start_content("t1")
        await orchestrator.close_active_tour()
        assert checklist.store.get_snapshot().expanded is False


class TestContents:
    @pytest.mark.asyncio
    async def test_set_content_refresh_get_content(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1"))
        tour = orchestrator.active_tour
        updated = _make_tour("t1", steps=[{"cvid": "s1", "name": "Welcome", "type": "modal"}])

        tour.set_content(updated)
        await tour.refresh()

        assert tour.get_content() is updated
        snapshot = tour.store.get_snapshot()
        assert snapshot.content is updated
        assert snapshot.current_step.name == "Welcome"

    @pytest.mark.asyncio
    async def test_new_version_refreshes_live_item(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1"))
        tour = orchestrator.active_tour
        updated = _make_tour("t1", steps=[{"cvid": "s1", "name": "Welcome", "type": "modal"}])

        await orchestrator.set_contents([updated])

        assert orchestrator.tours["t1"] is tour
        assert tour.store.get_snapshot().current_step.name == "Welcome"

    @pytest.mark.asyncio
    async def test_unpublished_content_is_closed(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1"))
        tour = orchestrator.active_tour

        await orchestrator.set_contents([])

        assert tour.end_reason == ContentEndReason.UNPUBLISHED_CONTENT
        assert "t1" not in orchestrator.tours
        assert transport.events_named("flow_ended")[0]["data"]["end_reason"] == "unpublished_content"

    @pytest.mark.asyncio
    async def test_refresh_content_session(self):
        orchestrator, _, _, clock = await _make_kernel(_make_tour("t1"))
        tour = orchestrator.active_tour
        pushed = tour.session.model_copy(update={"biz_event": []})

        assert orchestrator.refresh_content_session(pushed) is True
        assert tour.session is pushed
        assert orchestrator.find_content("t1").latest_session is pushed

        stray = ContentSession(id="x", content_id="unknown", created_at=clock.now())
        assert orchestrator.refresh_content_session(stray) is False

    @pytest.mark.asyncio
    async def test_start_unknown_content(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1"))
        assert await orchestrator.start_content("missing") is False


class TestIdentity:
    @pytest.mark.asyncio
    async def test_identify_failure(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1"), identify=False)
        transport.offline = True
        assert await orchestrator.identify("user_1") is False
        assert orchestrator.is_started is False

    @pytest.mark.asyncio
    async def test_anonymous_id_is_stable(self):
        orchestrator, env, _, _ = await _make_kernel(identify=False)
        assert await orchestrator.identify_anonymous() is True
        first = env.storage.get(ANONYMOUS_ID_KEY)

        assert await orchestrator.identify_anonymous() is True
        assert env.storage.get(ANONYMOUS_ID_KEY) == first
        assert orchestrator.user_info.external_id == first
        assert orchestrator.user_info.is_anonymous is True

    @pytest.mark.asyncio
    async def test_user_change_resets(self):
        orchestrator, _, transport, _ = await _make_kernel(_make_tour("t1"))
        first = orchestrator.active_tour

        assert await orchestrator.identify("user_2") is True

        assert first.end_reason == ContentEndReason.END_FROM_PROGRAM
        ended = transport.events_named("flow_ended")
        assert ended[0]["user"] == "user_1"
        assert orchestrator.active_tour is not first
        assert orchestrator.active_tour.session.id != first.session.id

    @pytest.mark.asyncio
    async def test_group_and_update_group(self):
        orchestrator, _, transport, _ = await _make_kernel()
        assert await orchestrator.update_group({"plan": "pro"}) is False

        assert await orchestrator.group("acme", {"plan": "free"}) is True
        assert await orchestrator.update_group({"plan": "pro"}) is True
        assert transport.companies["acme"].data == {"plan": "pro"}

    @pytest.mark.asyncio
    async def test_reset_forgets_everything(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1"), _make_checklist())
        await orchestrator.reset()

        assert orchestrator.is_started is False
        assert orchestrator.user_info is None
        assert orchestrator.tours == {}
        assert orchestrator.checklists == {}
        assert orchestrator.active_tour is None
        assert orchestrator.rules.cached_elements == 0


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_target_missing_seconds_bounds(self):
        steps = [{"cvid": "s1", "type": "tooltip", "target": {"type": "manual", "customSelector": "#a"}}]
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1", steps=steps))

        with pytest.raises(ValueError):
            orchestrator.set_target_missing_seconds(11)

        orchestrator.set_target_missing_seconds(3)
        assert orchestrator.config.target_missing_seconds == 3
        assert orchestrator.active_tour.watcher.target_missing_seconds == 3

    @pytest.mark.asyncio
    async def test_session_timeout_bounds(self):
        orchestrator, _, _, _ = await _make_kernel()
        with pytest.raises(ValueError):
            orchestrator.set_session_timeout(-1)
        orchestrator.set_session_timeout(48)
        assert orchestrator.config.session_timeout_hours == 48


class TestStartupQueue:
    @pytest.mark.asyncio
    async def test_calls_replay_in_order_on_bind(self):
        orchestrator, _, _, _ = await _make_kernel(_make_tour("t1"), identify=False)
        queue = StartupQueue()

        assert await queue.call("identify", "user_1") is None
        assert await queue.call("start_content", "t1") is None
        assert len(queue) == 2

        results = await queue.bind(orchestrator)

        assert results == [True, True]
        assert len(queue) == 0
        assert orchestrator.active_tour.content_id == "t1"

        status = await queue.call("status")
        assert status["active_tour"] == "t1"

    @pytest.mark.asyncio
    async def test_full_queue_drops_calls(self):
        queue = StartupQueue(maxsize=1)
        assert queue.push("identify", "user_1") is True
        assert queue.push("identify", "user_2") is False
        assert queue.dropped == 1

    @pytest.mark.asyncio
    async def test_failed_replay_does_not_stop_others(self):
        orchestrator, _, _, _ = await _make_kernel(identify=False)
        queue = StartupQueue()
        queue.push("no_such_operation")
        queue.push("identify", "user_1")

        results = await queue.bind(orchestrator)
        assert results == [None, True]
        assert queue.is_bound is True
