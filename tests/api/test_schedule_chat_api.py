"""HTTP tests for the schedule chat router."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from coachplan.api.schedule_chat import get_pipeline
from coachplan.config.settings import settings
from coachplan.main import app


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def use_drafter(make_pipeline):
    def _use(drafter):
        pipeline = make_pipeline(drafter)
        app.dependency_overrides[get_pipeline] = lambda: pipeline
        return pipeline

    return _use


def test_get_schedule(client, schedule_id):
    response = client.get(f"/schedules/{schedule_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["version"] == 1
    assert body["items"][0]["id"] == "item-0209"


def test_get_unknown_schedule(client, db_engine):
    response = client.get("/schedules/missing")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "schedule_not_found"


def test_draft_preview_commit_round_trip(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory({"operation": "cancel", "target_dates": ["2026-02-13"]}))

    drafted = client.post(
        f"/schedules/{schedule_id}/chat",
        json={"mode": "draft", "message": "Cancel 2026-02-13, my legs are sore"},
    ).json()

    assert drafted["mode"] == "preview"
    preview = drafted["preview"]
    committed = client.post(
        f"/schedules/{schedule_id}/chat",
        json={
            "mode": "commit",
            "preview_id": preview["preview_id"],
            "plan_version": drafted["plan_version"],
            "confirmed_item_ids": preview["affected_item_ids"],
            "preview_hash": preview["preview_hash"],
        },
    ).json()

    assert committed["mode"] == "committed"
    assert committed["plan_version"] == 2
    assert client.get(f"/schedules/{schedule_id}").json()["version"] == 2


def test_clarification_round_trip(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory({"operation": "cancel", "target_dates": ["2026-02-17"]}))

    asked = client.post(f"/schedules/{schedule_id}/chat", json={"mode": "draft", "message": "Skip Tuesday"}).json()
    assert asked["mode"] == "clarification_required"

    answered = client.post(
        f"/schedules/{schedule_id}/chat",
        json={
            "mode": "clarification_response",
            "clarification_id": asked["clarification"]["id"],
            "selected_date": asked["clarification"]["options"][1]["iso_date"],
        },
    ).json()

    assert answered["mode"] == "preview"
    assert answered["preview"]["affected_item_ids"] == ["item-0217"]


def test_intervention_round_trip(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory({"operation": "cancel", "target_dates": ["2026-02-12", "2026-02-13"]}))

    halted = client.post(
        f"/schedules/{schedule_id}/chat",
        json={"mode": "draft", "message": "Cancel 2026-02-12 and 2026-02-13"},
    ).json()
    assert halted["mode"] == "intervention"

    resolved = client.post(
        f"/schedules/{schedule_id}/chat",
        json={"mode": "intervention_response", "intervention_id": halted["intervention"]["id"], "reply": "C"},
    ).json()

    assert resolved["mode"] == "preview"


def test_invalid_selection_is_bad_request(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory())
    asked = client.post(f"/schedules/{schedule_id}/chat", json={"mode": "draft", "message": "Skip Tuesday"}).json()

    response = client.post(
        f"/schedules/{schedule_id}/chat",
        json={"mode": "clarification_response", "clarification_id": asked["clarification"]["id"], "selected_date": "2026-02-18"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_selection"


def test_unknown_intervention_is_not_found(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory())

    response = client.post(
        f"/schedules/{schedule_id}/chat",
        json={"mode": "intervention_response", "intervention_id": "missing", "reply": "C"},
    )

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "intervention_not_found"


def test_drafter_timeout_maps_to_gateway_timeout(client, schedule_id, use_drafter, monkeypatch):
    class SlowDrafter:
        async def draft(self, context):
            await asyncio.sleep(1)
            return {"operation": "none"}

    use_drafter(SlowDrafter())
    monkeypatch.setattr(settings, "drafter_timeout_seconds", 0.01)

    response = client.post(f"/schedules/{schedule_id}/chat", json={"mode": "draft", "message": "Cancel next week"})

    assert response.status_code == 504
    assert response.json()["detail"]["code"] == "drafter_timeout"


def test_malformed_draft_maps_to_bad_gateway(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory({"operation": "obliterate"}))

    response = client.post(f"/schedules/{schedule_id}/chat", json={"mode": "draft", "message": "Cancel next week"})

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "invalid_draft_payload"


def test_unknown_mode_is_rejected(client, schedule_id, drafter_factory, use_drafter):
    use_drafter(drafter_factory())

    response = client.post(f"/schedules/{schedule_id}/chat", json={"mode": "delete", "message": "everything"})

    assert response.status_code == 422


def test_resolved_dates_must_be_calendar_dates(client, schedule_id, drafter_factory, use_drafter):
    drafter = drafter_factory({"operation": "cancel", "scope": "Tuesday"})
    use_drafter(drafter)

    response = client.post(
        f"/schedules/{schedule_id}/chat",
        json={"mode": "draft", "message": "Cancel Tuesday", "resolved_dates": {"tuesday": "next tues"}},
    )

    assert response.status_code == 422
    assert drafter.contexts == []
