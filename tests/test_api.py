import asyncio
import json
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from starlette.requests import Request

from foodbridge.api.main import app
from foodbridge.api.routers import get_current_actor, snapshot_events, stream_donations
from foodbridge.core.dependencies import get_donation_gateway


@pytest.fixture
def acting_as(donor):
    return {"actor": donor}

@pytest.fixture
def client(gateway, acting_as):
    app.dependency_overrides[get_donation_gateway] = lambda: gateway
    app.dependency_overrides[get_current_actor] = lambda: acting_as["actor"]
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def draft_body(make_draft):
    body = make_draft()
    body["expiry_time"] = body["expiry_time"].isoformat()
    return body

@pytest.fixture
def posted_id(client, draft_body):
    response = client.post("/donations", json=draft_body)
    assert response.status_code == 201
    return response.json()["donation_id"]


def test_post_donation(client, draft_body, donor):
    response = client.post("/donations", json=draft_body)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "available"
    assert body["veg_label"] == "Mixed"
    assert body["total_quantity"] == 15
    assert body["donor_id"] == donor.actor_id
    assert body["freshness"] == "soon"
    assert body["requested_by"] is None


def test_post_with_past_expiry(client, make_draft, clock):
    body = make_draft(expiry_time=(clock.now - timedelta(minutes=1)).isoformat())
    response = client.post("/donations", json=body)

    assert response.status_code == 422
    assert "future" in response.json()["detail"]


def test_ngo_cannot_post(client, draft_body, acting_as, ngo_a):
    acting_as["actor"] = ngo_a
    assert client.post("/donations", json=draft_body).status_code == 422


def test_request_race_is_reported_as_conflict(client, posted_id, acting_as, ngo_a, ngo_b):
    acting_as["actor"] = ngo_a
    first = client.post(f"/donations/{posted_id}/request")
    acting_as["actor"] = ngo_b
    second = client.post(f"/donations/{posted_id}/request")

    assert first.status_code == 200
    assert first.json()["requested_by"] == ngo_a.actor_id
    assert second.status_code == 409
    assert "just claimed" in second.json()["detail"]


def test_repeat_request_is_reported_to_the_requester(client, posted_id, acting_as, ngo_a):
    acting_as["actor"] = ngo_a
    client.post(f"/donations/{posted_id}/request")
    again = client.post(f"/donations/{posted_id}/request")

    assert again.status_code == 409
    assert again.json()["detail"] == "You already requested this donation."


def test_unknown_donation(client, acting_as, ngo_a):
    acting_as["actor"] = ngo_a
    assert client.post("/donations/nope/request").status_code == 404


def test_only_requester_can_collect(client, posted_id, acting_as, ngo_a, ngo_b):
    acting_as["actor"] = ngo_a
    client.post(f"/donations/{posted_id}/request")
    acting_as["actor"] = ngo_b

    assert client.post(f"/donations/{posted_id}/collect").status_code == 403


def test_cancel_window_countdown(client, posted_id, acting_as, ngo_a, clock):
    acting_as["actor"] = ngo_a
    client.post(f"/donations/{posted_id}/request")

    clock.advance(minutes=5)
    window = client.get(f"/donations/{posted_id}/cancel-window").json()
    assert window == {
        "donation_id": posted_id,
        "cancellable": True,
        "remaining_seconds": 600,
        "countdown": "10:00",
    }

    clock.advance(minutes=10)
    window = client.get(f"/donations/{posted_id}/cancel-window").json()
    assert window["cancellable"] is False
    assert window["countdown"] == "0:00"
    assert client.post(f"/donations/{posted_id}/cancel-request").status_code == 409


def test_collect_stats_and_delete(client, posted_id, acting_as, donor, ngo_a):
    acting_as["actor"] = ngo_a
    client.post(f"/donations/{posted_id}/request")
    collected = client.post(f"/donations/{posted_id}/collect")
    assert collected.json()["status"] == "collected"
    assert client.get("/donations/stats").json()["meals_saved"] == 15
    assert [d["donation_id"] for d in client.get("/donations/mine").json()] == [posted_id]
    assert client.get("/donations/available").json() == []

    acting_as["actor"] = donor
    stats = client.get("/donations/stats").json()
    assert (stats["total_posted"], stats["collected"]) == (1, 1)

    assert client.delete(f"/donations/{posted_id}").status_code == 204
    assert client.get("/donations").json() == []


def test_donor_cannot_delete_live_donation(client, posted_id):
    assert client.delete(f"/donations/{posted_id}").status_code == 409


def _request_with_claims(claims: dict) -> Request:
    event = {"requestContext": {"authorizer": {"claims": claims}}}
    return Request({"type": "http", "method": "GET", "path": "/", "headers": [], "aws.event": event})


async def test_actor_from_cognito_claims():
    actor = await get_current_actor(_request_with_claims({
        "sub": "abc-123",
        "email": "meals@helpinghands.org",
        "email_verified": True,
        "name": "Helping Hands",
        "custom:role": "ngo",
    }), None)

    assert (actor.actor_id, actor.name, actor.role) == ("abc-123", "Helping Hands", "ngo")


@pytest.mark.parametrize("claims, status_code", [
    ({}, 401),
    ({"sub": "abc", "email": "a@b.org", "email_verified": True}, 401),
    ({"sub": "abc", "email": "a@b.org", "email_verified": False, "custom:role": "donor"}, 403),
])
async def test_actor_rejections(claims, status_code):
    with pytest.raises(HTTPException) as exc:
        await get_current_actor(_request_with_claims(claims), None)
    assert exc.value.status_code == status_code


async def test_stream_sends_what_the_actor_may_see(gateway, draft, donor, other_donor):
    mine = await gateway.create(draft, donor)
    await gateway.create(draft, other_donor)
    queue = asyncio.Queue()
    subscription = await gateway.subscribe(queue.put_nowait)
    disconnects = iter([False, True])

    async def disconnected():
        return next(disconnects)

    events = snapshot_events(gateway, subscription, queue, donor, disconnected)
    first = await events.__anext__()

    kind, event_id, data = first.strip().split("\n")
    payload = json.loads(data.removeprefix("data: "))
    assert kind == "event: snapshot"
    assert event_id == f"id: {payload['version']}"
    assert [d["donation_id"] for d in payload["donations"]] == [mine.donation_id]

    with pytest.raises(StopAsyncIteration):
        await events.__anext__()
    assert not subscription.active


async def test_stream_route_starts_snapshot_polling(gateway, ngo_a):
    request = Request({"type": "http", "method": "GET", "path": "/donations/stream", "headers": []})

    response = await stream_donations(request, ngo_a, gateway)
    watcher = gateway._watcher

    assert response.media_type == "text/event-stream"
    assert watcher is not None and not watcher.done()

    gateway.close()
    await asyncio.gather(watcher, return_exceptions=True)
    assert watcher.cancelled()
