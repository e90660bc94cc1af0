"""
Tests for tier analytics rollups.
"""
from datetime import datetime, timezone

import pytest

from tierline.core.errors import ValidationError
from tierline.features.analytics.service import calculate_tier_analytics, get_tier_analytics_snapshot
from tierline.features.usage.service import append_usage_event


def _at(month, day, hour=0):
    return datetime(2026, month, day, hour, tzinfo=timezone.utc)


def test_daily_buckets_are_half_open(creator_id, make_meter, now):
    meter = make_meter(aggregation_type="sum")
    append_usage_event(meter.id, "cust_1", 5, timestamp=_at(3, 1, 9))
    append_usage_event(meter.id, "cust_2", 7, timestamp=_at(3, 3, 23))
    append_usage_event(meter.id, "cust_1", 100, timestamp=_at(3, 4))

    snapshot = calculate_tier_analytics(creator_id, _at(3, 1), _at(3, 4), now=now)

    assert [b.bucket_start.day for b in snapshot.buckets] == [1, 2, 3]
    assert [b.meter_totals["api_calls"] for b in snapshot.buckets] == [5, 0, 7]
    assert snapshot.per_meter_totals == {"api_calls": 12}


def test_period_totals_use_meter_aggregation(creator_id, make_meter, now):
    peak = make_meter("storage_gb", aggregation_type="max")
    docs = make_meter("documents", aggregation_type="unique")
    for day, value in ((1, 4), (2, 9), (3, 6)):
        append_usage_event(peak.id, "cust_1", value, timestamp=_at(3, day))
        append_usage_event(docs.id, "cust_1", 1, properties={"resourceId": "doc-1"}, timestamp=_at(3, day))

    snapshot = calculate_tier_analytics(creator_id, _at(3, 1), _at(3, 4), now=now)

    # Period max and distinct counts are not sums of the daily buckets
    assert snapshot.per_meter_totals == {"documents": 1, "storage_gb": 9}
    assert [b.meter_totals["documents"] for b in snapshot.buckets] == [1, 1, 1]


def test_monthly_buckets_clip_to_period(creator_id, make_meter, now):
    meter = make_meter()
    append_usage_event(meter.id, "cust_1", timestamp=_at(3, 10))
    append_usage_event(meter.id, "cust_1", timestamp=_at(3, 20))
    append_usage_event(meter.id, "cust_1", timestamp=_at(4, 2))

    snapshot = calculate_tier_analytics(creator_id, _at(3, 15), _at(5, 10), granularity="monthly", now=now)

    bounds = [(b.bucket_start, b.bucket_end) for b in snapshot.buckets]
    assert bounds == [(_at(3, 15), _at(4, 1)), (_at(4, 1), _at(5, 1)), (_at(5, 1), _at(5, 10))]
    assert [b.meter_totals["api_calls"] for b in snapshot.buckets] == [1, 1, 0]


def test_subscriber_counts_per_tier(creator_id, make_tier, assign, now):
    pro = make_tier("Pro")
    team = make_tier("Team", price=5000)
    assign("cust_1", pro)
    assign("cust_2", pro)
    assign("cust_3", team)

    snapshot = calculate_tier_analytics(creator_id, _at(3, 1), _at(4, 1), granularity="monthly", now=now)

    assert snapshot.per_tier_subscriber_counts == {"Pro": 2, "Team": 1}


def test_snapshot_is_stored_and_overwritten(creator_id, make_meter, now):
    meter = make_meter()
    append_usage_event(meter.id, "cust_1", timestamp=_at(3, 2))
    calculate_tier_analytics(creator_id, _at(3, 1), _at(3, 4), now=now)

    append_usage_event(meter.id, "cust_1", timestamp=_at(3, 2))
    fresh = calculate_tier_analytics(creator_id, _at(3, 1), _at(3, 4), now=now)
    stored = get_tier_analytics_snapshot(creator_id, _at(3, 1), _at(3, 4))

    assert stored.model_dump(mode="json") == fresh.model_dump(mode="json")
    assert stored.per_meter_totals == {"api_calls": 2}
    assert get_tier_analytics_snapshot(creator_id, _at(3, 1), _at(3, 4), "monthly") is None


@pytest.mark.parametrize(
    "start,end,granularity",
    [
        (_at(3, 4), _at(3, 1), "daily"),
        (_at(3, 1), _at(3, 1), "daily"),
        (_at(3, 1), _at(3, 4), "hourly"),
        (datetime(2020, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 1, tzinfo=timezone.utc), "daily"),
    ],
)
def test_rejects_bad_periods(creator_id, start, end, granularity):
    with pytest.raises(ValidationError):
        calculate_tier_analytics(creator_id, start, end, granularity)
