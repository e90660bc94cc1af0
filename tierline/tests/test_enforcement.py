"""
Tests for the enforcement engine.
"""
from datetime import datetime, timedelta, timezone

import pytest

from tierline.core.errors import NotFoundError, ValidationError
from tierline.core.metrics import enforcement_decisions_total, limit_cache_entries
from tierline.features.enforcement.cache import LimitCache, limit_cache
from tierline.features.enforcement.service import check_enforcement
from tierline.features.meters.service import update_plan_limits
from tierline.features.usage.service import append_usage_event

ASSIGNED_AT = datetime(2026, 3, 1, tzinfo=timezone.utc)
USED_AT = ASSIGNED_AT + timedelta(days=1)


def _use(meter, customer_id, count, value=1):
    for _ in range(count):
        append_usage_event(meter.id, customer_id, value, timestamp=USED_AT)


@pytest.fixture
def hard_capped(make_meter, make_tier, assign):
    meter = make_meter(limits=[{"plan_name": "Pro", "limit_value": 100, "hard_cap": True, "soft_limit_threshold": 0.8}])
    assign("cust_1", make_tier("Pro"))
    return meter


def test_hard_cap_boundary(creator_id, hard_capped, now):
    _use(hard_capped, "cust_1", 99)

    allowed = check_enforcement("cust_1", creator_id, "api_calls", 1, now=now)
    denied = check_enforcement("cust_1", creator_id, "api_calls", 2, now=now)

    assert allowed.allowed is True
    assert denied.allowed is False
    assert denied.reason == "LIMIT_EXCEEDED"
    assert denied.limit == 100
    assert denied.remaining == 1
    assert denied.current_usage == 99


def test_enforcement_is_monotone_in_increment(creator_id, hard_capped, now):
    _use(hard_capped, "cust_1", 60)

    verdicts = [check_enforcement("cust_1", creator_id, "api_calls", n, now=now).allowed for n in range(0, 60)]
    # Once denied, every larger increment is denied too
    assert verdicts == sorted(verdicts, reverse=True)
    assert verdicts.index(False) == 41


def test_soft_warning_fires_on_threshold_transition(creator_id, hard_capped, now):
    _use(hard_capped, "cust_1", 78)
    before = check_enforcement("cust_1", creator_id, "api_calls", 1, now=now)
    assert before.warning is False

    _use(hard_capped, "cust_1", 1)
    crossing = check_enforcement("cust_1", creator_id, "api_calls", 1, now=now)
    assert crossing.allowed is True
    assert crossing.warning is True
    assert crossing.outcome.value == "warn"


def test_non_hard_cap_allows_overage(creator_id, make_meter, make_tier, assign, now):
    meter = make_meter(limits=[{"plan_name": "Pro", "limit_value": 1000, "overage_price": 5}])
    assign("cust_1", make_tier("Pro"))
    _use(meter, "cust_1", 4)

    decision = check_enforcement("cust_1", creator_id, "api_calls", 5000, now=now)

    assert decision.allowed is True
    assert decision.overage is True
    assert decision.outcome.value == "overage"


def test_unlimited_limit_always_allows(creator_id, make_meter, make_tier, assign, now):
    meter = make_meter(limits=[{"plan_name": "Pro", "limit_value": None, "hard_cap": True}])
    assign("cust_1", make_tier("Pro"))
    _use(meter, "cust_1", 50)

    decision = check_enforcement("cust_1", creator_id, "api_calls", 10 ** 9, now=now)

    assert decision.allowed is True
    assert decision.unlimited is True
    assert decision.limit is None and decision.remaining is None


def test_no_assignment_falls_back_to_default_tier(creator_id, make_meter, make_tier, now):
    meter = make_meter(limits=[{"plan_name": "Free", "limit_value": 5, "hard_cap": True}])
    make_tier("Free", price=0, is_default=True)
    # No assignment: the window starts at the beginning of the month
    for _ in range(5):
        append_usage_event(meter.id, "anon", 1, timestamp=datetime(2026, 3, 2, tzinfo=timezone.utc))
    append_usage_event(meter.id, "anon", 1, timestamp=datetime(2026, 2, 27, tzinfo=timezone.utc))

    decision = check_enforcement("anon", creator_id, "api_calls", 1, now=now)

    assert decision.allowed is False
    assert decision.current_usage == 5
    assert decision.period_start == datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_no_assignment_and_no_default_is_unlimited(creator_id, make_meter, now):
    make_meter(limits=[{"plan_name": "Pro", "limit_value": 1, "hard_cap": True}])

    decision = check_enforcement("anon", creator_id, "api_calls", 100, now=now)

    assert decision.allowed is True
    assert decision.unlimited is True


def test_usage_cap_fallback_denies_by_default(creator_id, make_meter, make_tier, assign, now):
    meter = make_meter()
    assign("cust_1", make_tier("Basic", usage_caps={"api_calls": 3}))
    _use(meter, "cust_1", 3)

    decision = check_enforcement("cust_1", creator_id, "api_calls", 1, now=now)

    assert decision.allowed is False
    assert decision.limit == 3


def test_unknown_meter_and_bad_increment(creator_id, hard_capped, now):
    with pytest.raises(NotFoundError):
        check_enforcement("cust_1", creator_id, "missing", 1, now=now)
    with pytest.raises(ValidationError):
        check_enforcement("cust_1", creator_id, "api_calls", -1, now=now)


def test_decisions_are_counted(creator_id, hard_capped, now):
    _use(hard_capped, "cust_1", 100)
    check_enforcement("cust_1", creator_id, "api_calls", 1, now=now)
    check_enforcement("cust_1", creator_id, "api_calls", 0, now=now)

    assert enforcement_decisions_total.value({"outcome": "deny"}) == 1
    assert enforcement_decisions_total.value({"outcome": "warn"}) == 1


def test_limit_changes_invalidate_cache(creator_id, hard_capped, now):
    _use(hard_capped, "cust_1", 10)
    assert check_enforcement("cust_1", creator_id, "api_calls", 1, now=now).allowed is True
    assert len(limit_cache) == 1
    assert limit_cache_entries.value() == 1

    update_plan_limits(
        hard_capped.id, creator_id, [{"plan_name": "Pro", "limit_value": 5, "hard_cap": True}]
    )

    assert len(limit_cache) == 0
    assert check_enforcement("cust_1", creator_id, "api_calls", 1, now=now).allowed is False


def test_limit_cache_expires_after_ttl():
    clock = [100.0]
    cache = LimitCache(ttl_seconds=30, clock=lambda: clock[0])
    cache.set("k", "v")

    clock[0] = 129.9
    assert cache.get("k") == "v"
    clock[0] = 130.0
    assert cache.get("k") is None
    assert len(cache) == 0


def test_limit_cache_sweeps_expired_customers_on_write():
    clock = [0.0]
    cache = LimitCache(ttl_seconds=1, clock=lambda: clock[0])
    for i in range(1000):
        cache.set(("context", "creator_1", f"cust_{i}", "api_calls"), "ctx")
    assert len(cache) == 1000

    clock[0] = 100.0
    cache.set(("context", "creator_1", "cust_new", "api_calls"), "ctx")

    assert len(cache) == 1
    assert limit_cache_entries.value() == 1


def test_limit_cache_evicts_oldest_beyond_max_entries():
    cache = LimitCache(ttl_seconds=30, clock=lambda: 0.0, max_entries=3)
    for key in ("a", "b", "c"):
        cache.set(key, key)

    cache.set("b", "b2")
    assert len(cache) == 3

    cache.set("d", "d")
    assert len(cache) == 3
    assert cache.get("a") is None
    assert (cache.get("b"), cache.get("c"), cache.get("d")) == ("b2", "c", "d")


def test_limit_cache_disabled_with_zero_ttl():
    cache = LimitCache(ttl_seconds=0)
    calls = []

    def load():
        calls.append(1)
        return "value"

    assert cache.get_or_load("k", load) == "value"
    assert cache.get_or_load("k", load) == "value"
    assert len(calls) == 2
