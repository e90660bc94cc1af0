"""
Tests for the admin billing API (X-Admin-Key protected).
"""
from datetime import datetime, timezone

import pytest

import tierline.api.billing as billing_api
from tierline.features.usage.service import append_usage_event

ADMIN = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def billed_creator(make_meter, make_tier, assign):
    meter = make_meter(aggregation_type="sum", limits=[{"plan_name": "Pro", "limit_value": 1000, "overage_price": 5}])
    assign("cust_1", make_tier("Pro"))
    append_usage_event(meter.id, "cust_1", 1200, timestamp=datetime(2026, 3, 2, tzinfo=timezone.utc))
    return meter


@pytest.mark.parametrize("headers", [{}, {"X-Admin-Key": "nope"}])
def test_admin_key_required(client, headers):
    resp = client.post("/v1/billing/process", headers=headers, json={"creator_id": "creator_1", "billing_period": "2026-03"})
    assert resp.status_code == 403
    assert client.get("/v1/billing/results/creator_1/2026-03", headers=headers).status_code == 403


def test_process_then_read_result(client, billed_creator):
    resp = client.post("/v1/billing/process", headers=ADMIN, json={"creator_id": "creator_1", "billing_period": "2026-03"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "finalized"
    assert body["total_overage_amount"] == 1000
    assert body["overage_line_items"][0]["overage_quantity"] == 200

    stored = client.get("/v1/billing/results/creator_1/2026-03", headers=ADMIN)
    assert stored.json() == body

    again = client.post("/v1/billing/process", headers=ADMIN, json={"creator_id": "creator_1", "billing_period": "2026-03"})
    assert again.json() == body


def test_unknown_result_is_404(client):
    resp = client.get("/v1/billing/results/creator_1/2026-03", headers=ADMIN)
    assert resp.status_code == 404


@pytest.mark.parametrize("period", ["2026-3", "2026-13", "last-month", "2026-03\n"])
def test_malformed_period_is_400(client, period):
    resp = client.post("/v1/billing/process", headers=ADMIN, json={"creator_id": "creator_1", "billing_period": period})
    assert resp.status_code == 400


def test_enqueue_hands_off_to_queue(client, monkeypatch):
    queued = []

    def fake_enqueue(creator_id, billing_period):
        queued.append((creator_id, billing_period))
        return f"billing-{creator_id}-{billing_period}"

    monkeypatch.setattr(billing_api, "enqueue_billing_cycle", fake_enqueue)

    resp = client.post(
        "/v1/billing/process",
        headers=ADMIN,
        json={"creator_id": "creator_1", "billing_period": "2026-03", "enqueue": True},
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "job_id": "billing-creator_1-2026-03",
        "creator_id": "creator_1",
        "billing_period": "2026-03",
        "queued": True,
    }
    assert queued == [("creator_1", "2026-03")]


def test_open_period_is_412_and_not_queued(client, monkeypatch):
    queued = []
    monkeypatch.setattr(billing_api, "enqueue_billing_cycle", lambda *args: queued.append(args))

    for enqueue in (False, True):
        resp = client.post(
            "/v1/billing/process",
            headers=ADMIN,
            json={"creator_id": "creator_1", "billing_period": "2099-01", "enqueue": enqueue},
        )
        assert resp.status_code == 412
        assert resp.json()["error"]["code"] == "precondition_failed"

    assert queued == []
    assert client.get("/v1/billing/results/creator_1/2099-01", headers=ADMIN).status_code == 404


def test_warning_scan(client, make_meter, make_tier, assign):
    meter = make_meter(limits=[{"plan_name": "Pro", "limit_value": 10}])
    assign("cust_1", make_tier("Pro"))
    for _ in range(9):
        append_usage_event(meter.id, "cust_1")

    first = client.post("/v1/billing/warnings", headers=ADMIN, json={"creator_id": "creator_1"})
    second = client.post("/v1/billing/warnings", headers=ADMIN, json={"creator_id": "creator_1"})

    assert first.status_code == 200
    assert first.json()["sent"] == 1
    assert first.json()["warnings"][0]["meter_name"] == "api_calls"
    assert second.json()["sent"] == 0
