"""
End-to-end HTTP tests for meters, tiers, ingestion and enforcement.
"""
import pytest

CREATOR = {"X-Creator-Id": "creator_1"}


@pytest.fixture
def capped(client):
    """api_calls capped at 2 for the Pro tier, cust_1 on Pro."""
    meter = client.post(
        "/v1/meters",
        headers=CREATOR,
        json={"event_name": "api_calls", "plan_limits": [{"plan_name": "Pro", "limit_value": 2, "hard_cap": True}]},
    )
    assert meter.status_code == 201
    tier = client.post("/v1/tiers", headers=CREATOR, json={"name": "Pro", "price": 2000})
    assert tier.status_code == 201
    assigned = client.post(
        f"/v1/tiers/{tier.json()['id']}/assignments", headers=CREATOR, json={"customer_id": "cust_1"}
    )
    assert assigned.status_code == 201
    return {"meter": meter.json(), "tier": tier.json()}


def _track(client, **extra):
    body = {"meterOrEventName": "api_calls", "subscriberId": "cust_1", **extra}
    return client.post("/v1/usage/track", headers=CREATOR, json=body)


def test_track_until_hard_cap(client, capped):
    first = _track(client)
    second = _track(client)
    denied = _track(client)

    assert first.status_code == 200
    assert first.json()["remaining"] == 2
    assert second.json()["allowed"] is True
    assert denied.status_code == 429
    body = denied.json()
    assert body["allowed"] is False
    assert body["reason"] == "LIMIT_EXCEEDED"
    assert (body["limit"], body["remaining"], body["current_usage"]) == (2, 0, 2)
    assert body["error"]["code"] == "limit_exceeded"

    events = client.get("/v1/usage/events", headers=CREATOR, params={"meter": "api_calls"})
    assert len(events.json()) == 2


def test_track_replay_with_event_id(client, capped):
    first = _track(client, eventId="evt-1")
    replay = _track(client, eventId="evt-1")

    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True
    assert replay.json()["event_id"] == first.json()["event_id"] == "evt-1"


@pytest.mark.parametrize(
    "extra",
    [{"value": -1}, {"value": "lots"}, {"properties": {"tags": ["a"]}}, {"subscriberId": ""}],
)
def test_track_rejects_bad_payload(client, capped, extra):
    resp = _track(client, **extra)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_track_unknown_meter_is_404(client, capped):
    resp = _track(client, meterOrEventName="nope")
    assert resp.status_code == 404


def test_enforcement_dry_run_records_nothing(client, capped):
    _track(client)
    _track(client)

    at_cap = client.get(
        "/v1/usage/enforcement", headers=CREATOR, params={"customerId": "cust_1", "meter": "api_calls", "increment": 0}
    )
    over = client.get(
        "/v1/usage/enforcement", headers=CREATOR, params={"customerId": "cust_1", "meter": "api_calls"}
    )

    assert at_cap.json()["allowed"] is True
    assert at_cap.json()["warning"] is True
    assert over.status_code == 200
    assert over.json()["allowed"] is False
    assert over.json()["reason"] == "LIMIT_EXCEEDED"

    total = client.get("/v1/usage/aggregate", headers=CREATOR, params={"meter": "api_calls", "subscriberId": "cust_1"})
    assert total.json()["value"] == 2


def test_tier_info_and_upgrade_options(client, capped):
    _track(client)
    client.post("/v1/tiers", headers=CREATOR, json={"name": "Team", "price": 5000})

    info = client.get("/v1/usage/tier-info", params={"customerId": "cust_1", "creatorId": "creator_1"})
    assert info.status_code == 200
    body = info.json()
    assert body["tier"]["name"] == "Pro"
    assert body["usage_summary"]["api_calls"]["current_usage"] == 1

    missing = client.get("/v1/usage/tier-info", params={"customerId": "cust_9", "creatorId": "creator_1"})
    assert missing.status_code == 200
    assert missing.json() is None

    options = client.get("/v1/usage/upgrade-options", params={"customerId": "cust_1", "creatorId": "creator_1"})
    assert [o["tier"]["name"] for o in options.json()] == ["Team"]
    assert options.json()[0]["price_difference"] == 3000


def test_subscription_cancel_removes_tier(client, capped):
    resp = client.post(
        "/v1/assignments/status", headers=CREATOR, json={"customer_id": "cust_1", "status": "canceled"}
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "canceled"

    info = client.get("/v1/usage/tier-info", params={"customerId": "cust_1", "creatorId": "creator_1"})
    assert info.json() is None


def test_limit_removal_guarded_for_active_tiers(client, capped):
    meter_id = capped["meter"]["id"]

    blocked = client.put(f"/v1/meters/{meter_id}/limits", headers=CREATOR, json={"limits": []})
    assert blocked.status_code == 412
    assert blocked.json()["error"]["code"] == "precondition_failed"

    migrated = client.put(
        f"/v1/meters/{meter_id}/limits", headers=CREATOR, json={"limits": [], "allow_migration": True}
    )
    assert migrated.status_code == 200
    assert migrated.json()["plan_limits"] == []
    # Without a limit the customer is unlimited
    assert _track(client, value=1).status_code == 200


def test_deleted_meter_keeps_history(client, capped):
    _track(client)
    meter_id = capped["meter"]["id"]

    deleted = client.delete(f"/v1/meters/{meter_id}", headers=CREATOR)
    assert deleted.json()["active"] is False
    assert _track(client).status_code == 404

    events = client.get("/v1/usage/events", headers=CREATOR, params={"meter": "api_calls"})
    assert events.status_code == 200
    assert len(events.json()) == 1


def test_tier_admin_routes(client):
    created = client.post("/v1/tiers", headers=CREATOR, json={"name": "Pro", "price": 2000, "is_default": True})
    tier_id = created.json()["id"]

    patched = client.patch(f"/v1/tiers/{tier_id}", headers=CREATOR, json={"price": 2500})
    assert patched.json()["price"] == 2500
    assert patched.json()["is_default"] is True

    listed = client.get("/v1/tiers", headers=CREATOR)
    assert [t["name"] for t in listed.json()] == ["Pro"]

    assert client.delete(f"/v1/tiers/{tier_id}", headers=CREATOR).status_code == 204
    assert client.get("/v1/tiers", headers=CREATOR).json() == []
