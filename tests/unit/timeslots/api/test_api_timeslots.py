from fastapi.testclient import TestClient

import labslots.api.routers.timeslots as timeslots_router
from labslots.api.main import app
from labslots.api.routers.timeslots import get_timeslot_services
from tests.factories import candidate, create


def _propose(client: TestClient, *proposals: dict, entity_id: str = "evt_1", actor_id="owner_1"):
    return client.post(
        f"/entities/{entity_id}/timeslots",
        json={"entity_owner_id": "owner_1", "actor_id": actor_id, "proposals": list(proposals)},
    )


def _reschedule(client: TestClient, *candidates: dict, actor_id: str = "owner_1"):
    return client.post(
        "/entities/evt_1/reschedule",
        json={
            "entity_owner_id": "owner_1",
            "actor_id": actor_id,
            "candidates": list(candidates),
        },
    )


def test_create_list_and_history_roundtrip():
    with TestClient(app) as client:
        created = _propose(client, create("09:00", "10:00"), create("10:00", "11:00"))
        assert created.status_code == 201
        slots = created.json()
        assert [slot["state"] for slot in slots] == ["created", "created"]

        listed = client.get("/entities/evt_1/timeslots")
        summary = client.get("/entities/evt_1/timeslots", params={"view": "summary"})
        history = client.get(f"/timeslots/{slots[0]['slot_id']}/history")

    assert listed.status_code == 200
    assert listed.json()["by_day"] == {"2026-03-02": [slot["slot_id"] for slot in slots]}
    assert summary.json()["timeslots"] == []
    assert summary.json()["summary"]["pending"] == 2
    assert [entry["action"] for entry in history.json()] == ["create"]


def test_overlapping_batch_is_rejected_with_every_issue():
    with TestClient(app) as client:
        response = _propose(
            client,
            create("09:00", "10:00"),
            create("09:30", "10:30"),
            {"action": "create", "end_at": "2026-03-02T12:00:00Z"},
        )
        listed = client.get("/entities/evt_1/timeslots", params={"view": "all"})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "VALIDATION_ERROR"
    assert [(issue["code"], issue["field"]) for issue in detail["errors"]] == [
        ("MISSING_FIELD", "proposals[2].start_at"),
        ("OVERLAP", "proposals[1]"),
    ]
    assert listed.json()["timeslots"] == []


def test_single_decisions_map_lifecycle_errors_to_status_codes():
    with TestClient(app) as client:
        slot_id = _propose(client, create("09:00", "10:00")).json()[0]["slot_id"]

        approved = client.post(f"/timeslots/{slot_id}/approve", json={"actor_id": "owner_1"})
        again = client.post(f"/timeslots/{slot_id}/approve", json={"actor_id": "owner_1"})
        missing = client.post("/timeslots/ts_ghost/reject", json={"actor_id": "owner_1"})
        missing_history = client.get("/timeslots/ts_ghost/history")

    assert approved.status_code == 200
    assert approved.json()["state"] == "approved"
    assert again.status_code == 409
    assert again.json()["detail"].startswith("ALREADY_PROCESSED")
    assert missing.status_code == 404
    assert missing_history.status_code == 404


def test_delete_then_restore_through_the_api():
    with TestClient(app) as client:
        slot_id = _propose(client, create("09:00", "10:00")).json()[0]["slot_id"]
        deleted = _propose(client, {"action": "delete", "slot_id": slot_id})
        restored = client.post(
            f"/timeslots/{slot_id}/restore", json={"actor_id": "owner_1", "reason": "Room free"}
        )
        restored_again = client.post(f"/timeslots/{slot_id}/restore", json={"actor_id": "owner_1"})

    assert deleted.json()[0]["state"] == "deleted"
    assert restored.status_code == 200
    assert restored.json()["state"] == "restored"
    assert restored_again.status_code == 409


def test_batch_validation_reports_partial_failures():
    with TestClient(app) as client:
        slot_id = _propose(client, create("09:00", "10:00")).json()[0]["slot_id"]
        response = client.post(
            "/timeslots/validations",
            json={
                "validations": [
                    {"slot_id": slot_id, "action": "reject", "actor_id": "owner_1"},
                    {"slot_id": "ts_ghost", "action": "approve", "actor_id": "owner_1"},
                ]
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert [slot["state"] for slot in body["succeeded"]] == ["rejected"]
    assert [(failure["slot_id"], failure["code"]) for failure in body["failures"]] == [
        ("ts_ghost", "NOT_FOUND")
    ]


def test_reschedule_by_non_owner_then_owner_rejection():
    with TestClient(app) as client:
        accepted = _reschedule(client, candidate("09:00", "10:00"))
        proposed = _reschedule(client, candidate("13:00", "14:00"), actor_id="tech_1")
        forbidden = client.post("/entities/evt_1/reschedule/reject", json={"actor_id": "tech_1"})
        rejected = client.post("/entities/evt_1/reschedule/reject", json={"actor_id": "owner_1"})
        unknown = client.post("/entities/evt_none/reschedule/approve", json={"actor_id": "owner_1"})

    assert accepted.json()["message"] == "Reschedule applied immediately"
    assert proposed.status_code == 200
    assert proposed.json()["is_owner"] is False
    assert proposed.json()["message"] == "Reschedule pending owner validation"
    assert forbidden.status_code == 403
    assert rejected.status_code == 200
    event = rejected.json()["event"]
    assert event["status"] == "VALIDATED"
    assert [slot["start_at"][11:16] for slot in event["active_slots"]] == ["09:00"]
    assert unknown.status_code == 404


def test_reschedule_candidate_errors_use_candidate_paths():
    with TestClient(app) as client:
        response = _reschedule(
            client, candidate("09:00", "10:00"), candidate("09:30", "10:30")
        )

    assert response.status_code == 422
    assert response.json()["detail"]["errors"][0]["field"] == "candidates[1]"


def test_integrity_endpoint_reports_healthy_store():
    with TestClient(app) as client:
        _propose(client, create("09:00", "10:00"))
        response = client.get("/timeslots/integrity")

    assert response.status_code == 200
    body = response.json()
    assert body["is_valid"] is True
    assert body["total_slots"] == 1
    assert {check["status"] for check in body["checks"]} == {"pass"}


def test_lifecycle_can_be_disabled(monkeypatch):
    monkeypatch.setenv("TIMESLOT_LIFECYCLE_ENABLED", "false")

    with TestClient(app) as client:
        response = client.get("/entities/evt_1/timeslots")

    assert response.status_code == 404
    assert response.json()["detail"] == "TIMESLOT_LIFECYCLE_DISABLED"


def test_unavailable_repository_returns_503(monkeypatch):
    def _fail():
        raise RuntimeError("TIMESLOT_POSTGRES_CONNECTION_FAILED")

    monkeypatch.setattr(timeslots_router, "build_repository", _fail)

    with TestClient(app) as client:
        response = client.get("/entities/evt_1/timeslots")

    assert response.status_code == 503
    assert response.json()["detail"] == "TIMESLOT_POSTGRES_CONNECTION_FAILED"


def test_unhandled_errors_render_problem_details():
    class _BrokenQueries:
        def list_slots(self, **_kwargs):
            raise ValueError("boom")

    class _BrokenServices:
        queries = _BrokenQueries()

    app.dependency_overrides[get_timeslot_services] = lambda: _BrokenServices()
    try:
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/entities/evt_1/timeslots")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["instance"] == "/entities/evt_1/timeslots"


def test_entity_schedule_snapshot_follows_the_accepted_view():
    with TestClient(app) as client:
        before = client.get("/entities/evt_1/schedule")
        accepted = _reschedule(client, candidate("09:00", "10:00")).json()["event"]
        _reschedule(client, candidate("13:00", "14:00"), actor_id="tech_1")
        snapshot = client.get("/entities/evt_1/schedule")

    assert before.status_code == 404
    body = snapshot.json()
    assert body["current_slots"] == accepted["current_slots"]
    assert body["pending_count"] == 1
    assert [slot["start_at"][11:16] for slot in body["active_slots"]] == ["13:00"]


def test_past_date_policy_can_be_set_per_request():
    with TestClient(app) as client:
        strict = client.post(
            "/entities/evt_1/timeslots",
            json={
                "entity_owner_id": "owner_1",
                "actor_id": "owner_1",
                "proposals": [create("09:00", "10:00", day="2020-01-06")],
                "allow_past_dates": False,
            },
        )
        default = _propose(client, create("09:00", "10:00", day="2020-01-06"))

    assert strict.status_code == 422
    assert [issue["code"] for issue in strict.json()["detail"]["errors"]] == ["PAST_DATE"]
    assert default.status_code == 201
