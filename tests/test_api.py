"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from guidance_kernel.api.app import create_app
from guidance_kernel.models.config import KernelConfig
from guidance_kernel.transport.memory import InMemoryTransport


def _tour(content_id: str = "t1", steps=None) -> dict:
    return {
        "id": f"{content_id}-v1",
        "contentId": content_id,
        "type": "flow",
        "steps": steps or [{"cvid": "s1", "name": "Welcome", "type": "modal"}],
    }


def _checklist(content_id: str = "c1") -> dict:
    return {
        "id": f"{content_id}-v1",
        "contentId": content_id,
        "type": "checklist",
        "data": {"items": [{"id": "i1", "name": "Invite", "completeConditions": [{"type": "task-is-clicked"}]}]},
    }


def _launcher(content_id: str = "l1") -> dict:
    return {
        "id": f"{content_id}-v1",
        "contentId": content_id,
        "type": "launcher",
        "data": {"target": {"element": {"type": "manual", "customSelector": "#help"}}},
    }


@pytest.fixture
def client():
    """Create a test client with fresh components."""
    app = create_app(config=KernelConfig(target_missing_seconds=6))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def identified(client):
    response = client.post("/identify", json={"external_id": "user_1"})
    assert response.status_code == 200
    return client


class TestIdentity:
    def test_identify(self, client):
        response = client.post("/identify", json={"external_id": "user_1", "attributes": {"plan": "pro"}})
        assert response.status_code == 200
        data = response.json()
        assert data["started"] is True
        assert data["user"] == "user_1"

    def test_identify_anonymous(self, client):
        response = client.post("/identify", json={})
        assert response.status_code == 200
        assert response.json()["user"].startswith("anon_")

    def test_identify_failure(self):
        transport = InMemoryTransport()
        transport.offline = True
        with TestClient(create_app(transport=transport)) as client:
            response = client.post("/identify", json={"external_id": "user_1"})
        assert response.status_code == 502

    def test_reset(self, identified):
        response = identified.post("/reset")
        assert response.status_code == 200
        assert response.json()["started"] is False

    def test_startup_queue_replays_on_startup(self):
        app = create_app()
        app.state.startup_queue.push("identify", "user_1")
        with TestClient(app) as client:
            assert client.get("/status").json()["user"] == "user_1"


class TestContents:
    def test_push_contents_starts_tour(self, identified):
        response = identified.post("/contents", json=[_tour()])
        assert response.status_code == 200
        assert response.json()["contents"] == ["t1"]

        status = identified.get("/status").json()
        assert status["active_tour"] == "t1"
        assert status["visible_tours"] == ["t1"]

        listed = identified.get("/contents").json()
        assert listed[0]["contentId"] == "t1"

    def test_snapshot(self, identified):
        identified.post("/contents", json=[_tour()])
        response = identified.get("/contents/t1/snapshot")
        assert response.status_code == 200
        data = response.json()
        assert data["status"]["state"] == "visible"
        assert data["snapshot"]["current_step"]["cvid"] == "s1"
        assert data["snapshot"]["open_state"] is True

    def test_snapshot_not_found(self, identified):
        assert identified.get("/contents/nope/snapshot").status_code == 404

    def test_dismiss(self, identified):
        identified.post("/contents", json=[_tour()])
        response = identified.post("/contents/t1/dismiss", json={"reason": "user_closed"})
        assert response.status_code == 200
        assert response.json()["state"] == "destroyed"
        assert response.json()["end_reason"] == "user_closed"
        assert identified.get("/status").json()["active_tour"] is None

    def test_manual_start(self, identified):
        identified.post("/contents", json=[_tour()])
        identified.post("/contents/t1/dismiss", json={})
        response = identified.post("/contents/t1/start", json={})
        assert response.status_code == 200
        assert response.json()["started"] is True
        assert response.json()["status"]["active_tour"] == "t1"

    def test_start_unknown(self, identified):
        assert identified.post("/contents/nope/start", json={}).status_code == 404

    def test_push_session_for_unknown_content(self, identified):
        response = identified.post(
            "/sessions",
            json={"id": "s1", "contentId": "nope", "createdAt": "2026-01-01T00:00:00+00:00"},
        )
        assert response.status_code == 404


class TestClock:
    def test_tick(self, identified):
        first = identified.post("/tick").json()
        second = identified.post("/tick").json()
        assert second["tick"] == first["tick"] + 1

    def test_missing_tooltip_target_closes_tour(self, identified):
        steps = [
            {"cvid": "s1", "type": "tooltip", "target": {"type": "manual", "customSelector": "#a"}},
            {"cvid": "s2", "type": "modal"},
        ]
        identified.post("/contents", json=[_tour(steps=steps)])

        response = identified.post("/clock/advance", json={"seconds": 6})
        assert response.status_code == 200
        assert response.json()["ticks"] == 30

        status = identified.get("/contents/t1/snapshot").json()["status"]
        assert status["end_reason"] == "tooltip_target_missing"

    def test_cannot_go_backwards(self, identified):
        assert identified.post("/clock/advance", json={"seconds": -1}).status_code == 400


class TestPageAndItems:
    def test_page_elements(self, identified):
        response = identified.post("/page/elements", json={"selector": "#save", "text": "Save"})
        assert response.status_code == 200

        response = identified.patch("/page/elements/%23save", json={"disabled": True})
        assert response.json()["disabled"] is True

        assert identified.post("/page/elements/%23save/click").status_code == 200
        assert identified.delete("/page/elements/%23save").status_code == 200
        assert identified.get("/page/elements").json() == []
        assert identified.delete("/page/elements/%23save").status_code == 404

    def test_set_page(self, identified):
        response = identified.post("/page", json={"url": "https://app.example.com/app/billing"})
        assert response.json()["url"] == "https://app.example.com/app/billing"

    def test_checklist_click_and_expand(self, identified):
        identified.post("/contents", json=[_checklist()])

        response = identified.post("/checklists/c1/items/i1/click")
        assert response.status_code == 200
        assert response.json()["items"][0]["is_clicked"] is True

        response = identified.post("/checklists/c1/expand", params={"expanded": "false"})
        assert response.json()["expanded"] is False

        assert identified.post("/checklists/c1/items/nope/click").status_code == 404

    def test_launcher_activation(self, identified):
        identified.post("/page/elements", json={"selector": "#help"})
        identified.post("/contents", json=[_launcher(), _tour()])
        identified.post("/clock/advance", json={"seconds": 0.2})

        response = identified.post("/launchers/l1/activate")
        assert response.status_code == 200
        assert response.json()["activated"] is True

        assert identified.post("/launchers/t1/activate").status_code == 400
        assert identified.post("/checklists/l1/expand").status_code == 400
