"""API tests: FastAPI TestClient with the store, dispatcher and org lookup overridden (no Postgres/Redis)."""
from datetime import timedelta

import pytest
from conftest import NOW
from fastapi.testclient import TestClient

from gigguin.main import app
from gigguin.routes import deps, events
from gigguin.stages import EventStage

ACME = {"host": "acme.gigguin.com", "x-actor-id": "user-1"}
OTHER = {"host": "other.gigguin.com", "x-actor-id": "user-2"}


@pytest.fixture
def client(store, dispatcher, org_lookup):
    app.dependency_overrides[deps.get_store] = lambda: store
    app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[deps.get_org_lookup] = lambda: org_lookup
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seen_requests(monkeypatch):
    """In-process stand-in for the Redis SET NX idempotency check."""
    seen = set()

    async def check(key, ttl_seconds=None):
        if key in seen:
            return True
        seen.add(key)
        return False

    async def release(key):
        seen.discard(key)

    monkeypatch.setattr(events, "check_idempotency", check)
    monkeypatch.setattr(events, "release_idempotency", release)
    return seen


def _create(client, headers=ACME):
    resp = client.post(
        "/events",
        json={"name": "Warehouse Night", "date": (NOW + timedelta(days=30)).isoformat(), "venue_id": "venue-1"},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["event"]["id"]


def _offer(client, event_id, **extra):
    body = {
        "target_stage": "offer",
        "updates": {"offer_amount": 500, "offer_expires_at": (NOW + timedelta(days=3)).isoformat()},
        **extra,
    }
    return client.post(f"/events/{event_id}/transition", json=body, headers=ACME)


def test_create_event_starts_at_hold(client, dispatcher):
    resp = client.post(
        "/events",
        json={"name": "Warehouse Night", "date": NOW.isoformat(), "venue_id": "venue-1", "capacity": 300},
        headers=ACME,
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["event"]["status"] == "draft"
    assert body["event"]["org_id"] == "org-acme"
    assert body["pipeline"]["stage"] == "hold"
    assert body["pipeline"]["stage_history"] == []
    assert body["display"] == {"label": "Hold", "color": "yellow", "icon": "Clock", "progress": 20.0}
    assert len(dispatcher.calls) == 1


def test_unknown_host_is_404(client):
    resp = client.get("/events", headers={"host": "ghost.gigguin.com"})
    assert resp.status_code == 404


def test_missing_actor_is_401(client):
    resp = client.post("/events", json={"name": "x", "date": NOW.isoformat(), "venue_id": "v"},
                       headers={"host": "acme.gigguin.com"})
    assert resp.status_code == 401


def test_custom_domain_resolves_org(client):
    _create(client)
    resp = client.get("/events", headers={"host": "events.acme-club.com"})
    assert resp.status_code == 200
    assert len(resp.json()["pipelines"]) == 1


def test_transition_flow(client):
    event_id = _create(client)

    resp = _offer(client, event_id, notes="first offer")
    assert resp.status_code == 200
    assert resp.json()["pipeline"]["stage"] == "offer"
    assert resp.json()["pipeline"]["stage_history"][0]["notes"] == "first offer"

    resp = client.post(f"/events/{event_id}/transition", json={"target_stage": "confirmed"}, headers=ACME)
    assert resp.status_code == 422
    assert resp.json()["status"] == "missing_required_fields"
    assert resp.json()["fields"] == ["contract_signed"]

    resp = client.post(
        f"/events/{event_id}/transition",
        json={"target_stage": "confirmed", "updates": {"contract_signed": True}},
        headers=ACME,
    )
    assert resp.status_code == 200
    pipeline = resp.json()["pipeline"]
    assert pipeline["stage"] == "confirmed"
    assert pipeline["previous_stage"] == "offer"
    assert len(pipeline["stage_history"]) == 2
    assert resp.json()["display"]["progress"] == 60.0


def test_illegal_transition_is_409(client):
    event_id = _create(client)
    resp = client.post(f"/events/{event_id}/transition", json={"target_stage": "completed"}, headers=ACME)
    assert resp.status_code == 409
    assert resp.json()["status"] == "transition_not_allowed"
    assert resp.json()["current_stage"] == "hold"


def test_stale_version_is_409(client):
    event_id = _create(client)
    assert _offer(client, event_id).status_code == 200
    resp = client.post(
        f"/events/{event_id}/transition",
        json={"target_stage": "cancelled", "expected_version": 1},
        headers=ACME,
    )
    assert resp.status_code == 409
    assert resp.json()["status"] == "concurrency_conflict"


def test_unknown_fields_in_updates_are_rejected(client):
    event_id = _create(client)
    resp = client.post(
        f"/events/{event_id}/transition",
        json={"target_stage": "cancelled", "updates": {"stage": "completed"}},
        headers=ACME,
    )
    assert resp.status_code == 422


def test_other_org_cannot_read_or_move_pipeline(client):
    event_id = _create(client)
    assert client.get(f"/events/{event_id}/pipeline", headers=OTHER).status_code == 404
    resp = client.post(f"/events/{event_id}/transition", json={"target_stage": "cancelled"}, headers=OTHER)
    assert resp.status_code == 404
    assert client.get(f"/events/{event_id}/pipeline", headers=ACME).json()["pipeline"]["stage"] == "hold"


def test_repeated_request_id(client, seen_requests):
    event_id = _create(client)
    assert _offer(client, event_id, request_id="req-1").status_code == 200

    resp = _offer(client, event_id, request_id="req-1")
    assert resp.status_code == 200
    assert resp.json()["status"] == "already_processed"


def test_rejected_request_id_can_be_retried(client, seen_requests):
    event_id = _create(client)
    resp = client.post(
        f"/events/{event_id}/transition",
        json={"target_stage": "offer", "request_id": "req-2"},
        headers=ACME,
    )
    assert resp.status_code == 422
    assert _offer(client, event_id, request_id="req-2").json()["status"] == "ok"


def test_list_by_stage(client):
    first = _create(client)
    _create(client)
    _offer(client, first)

    resp = client.get("/events", params={"stage": "offer"}, headers=ACME)
    assert [p["pipeline"]["event_id"] for p in resp.json()["pipelines"]] == [first]
    assert len(client.get("/events", headers=ACME).json()["pipelines"]) == 2
    assert client.get("/events", headers=OTHER).json()["pipelines"] == []


def test_stats(client):
    event_id = _create(client)
    _create(client)
    client.post(f"/events/{event_id}/transition", json={"target_stage": "cancelled"}, headers=ACME)

    stats = client.get("/pipelines/stats", headers=ACME).json()
    assert stats["total"] == 2
    assert stats["by_stage"]["hold"] == 1
    assert stats["by_stage"]["cancelled"] == 1
    assert stats["conversion_rate"] == 0.0


def test_stage_table(client):
    table = client.get("/stages").json()
    assert set(table) == {s.value for s in EventStage}
    assert table["offer"]["next_stages"] == ["cancelled", "confirmed", "hold"]
    assert table["offer"]["on_exit"] == ["cancel_offer_reminder"]
    assert table["cancelled"]["progress"] is None


def test_admin_expiry_sweep(client, store, make_pipeline):
    make_pipeline(event_id="evt-old", hold_expires_at=NOW - timedelta(days=3650))
    resp = client.post("/admin/expiry/sweep")
    assert resp.status_code == 200
    assert resp.json()["hold"] == 1


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_transition_is_reported_even_if_hooks_cannot_be_queued(client, broken_dispatcher, seen_requests):
    app.dependency_overrides[deps.get_dispatcher] = lambda: broken_dispatcher
    event_id = _create(client)

    resp = _offer(client, event_id, request_id="req-3")
    assert resp.status_code == 200
    assert resp.json()["pipeline"]["stage"] == "offer"

    assert _offer(client, event_id, request_id="req-3").json()["status"] == "already_processed"
