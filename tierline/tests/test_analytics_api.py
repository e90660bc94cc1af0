from datetime import datetime, timezone

from tierline.features.usage.service import append_usage_event

CREATOR = {"X-Creator-Id": "creator_1"}
PERIOD = {"period_start": "2026-03-01T00:00:00Z", "period_end": "2026-03-04T00:00:00Z"}


def test_tier_analytics_endpoint(client, make_meter):
    meter = make_meter(aggregation_type="sum")
    append_usage_event(meter.id, "cust_1", 6, timestamp=datetime(2026, 3, 2, 10, tzinfo=timezone.utc))

    resp = client.get("/v1/analytics/tiers", headers=CREATOR, params=PERIOD)

    assert resp.status_code == 200
    body = resp.json()
    assert body["granularity"] == "daily"
    assert [b["meter_totals"]["api_calls"] for b in body["buckets"]] == [0, 6, 0]
    assert body["per_meter_totals"] == {"api_calls": 6}


def test_cached_snapshot_served_after_compute(client, make_meter):
    make_meter()

    assert client.get("/v1/analytics/tiers", headers=CREATOR, params={**PERIOD, "cached": True}).status_code == 404

    computed = client.get("/v1/analytics/tiers", headers=CREATOR, params=PERIOD)
    cached = client.get("/v1/analytics/tiers", headers=CREATOR, params={**PERIOD, "cached": True})
    assert cached.status_code == 200
    assert cached.json() == computed.json()


def test_bad_granularity_is_400(client):
    resp = client.get("/v1/analytics/tiers", headers=CREATOR, params={**PERIOD, "granularity": "hourly"})
    assert resp.status_code == 400
