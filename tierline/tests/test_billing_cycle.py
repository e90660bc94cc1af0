"""
Tests for the billing cycle processor.
"""
import threading
from datetime import datetime, timezone

import pytest

from tierline.core.errors import ConflictError, PreconditionError, ValidationError
from tierline.core.idempotency import acquire_lock, is_locked, release_lock
from tierline.core.metrics import billing_runs_total
from tierline.features.billing import service as billing_service
from tierline.features.billing.service import (
    billing_lock_key,
    compute_overage,
    get_billing_cycle_result,
    process_billing_cycle,
    resolve_closed_period,
)
from tierline.features.usage.service import append_usage_event

PERIOD = "2026-03"
IN_PERIOD = datetime(2026, 3, 2, tzinfo=timezone.utc)
RUN_AT = datetime(2026, 4, 2, 3, 0, tzinfo=timezone.utc)


@pytest.fixture
def metered(make_meter, make_tier, assign):
    meter = make_meter(
        aggregation_type="sum",
        limits=[{"plan_name": "Pro", "limit_value": 1000, "overage_price": 5}],
    )
    pro = make_tier("Pro")
    for customer_id in ("cust_a", "cust_b", "cust_c"):
        assign(customer_id, pro)
    return meter


@pytest.mark.parametrize(
    "usage,limit_value,price,expected",
    [
        (1200, 1000, 5, (200, 1000)),
        (1000, 1000, 5, (0, 0)),
        (10, 1000, 5, (0, 0)),
        (5000, None, 5, (0, 0)),
        (1500, 1000, 0, (500, 0)),
    ],
)
def test_compute_overage(usage, limit_value, price, expected):
    result = compute_overage(usage, limit_value, price)
    assert (result["overage_quantity"], result["overage_amount"]) == expected


def test_cycle_bills_overage(creator_id, metered, make_meter):
    seats = make_meter("seats", billing_model="licensed")
    append_usage_event(metered.id, "cust_a", 700, timestamp=IN_PERIOD)
    append_usage_event(metered.id, "cust_a", 500, timestamp=IN_PERIOD)
    append_usage_event(metered.id, "cust_b", 300, timestamp=IN_PERIOD)
    # Outside the half-open period
    append_usage_event(metered.id, "cust_b", 900, timestamp=datetime(2026, 4, 1, tzinfo=timezone.utc))
    append_usage_event(seats.id, "cust_a", 4, timestamp=IN_PERIOD)

    result = process_billing_cycle(creator_id, PERIOD, now=RUN_AT)

    assert result.finalized is True
    assert result.customers_processed == 3
    assert result.failed_customers == []
    assert result.per_meter_usage == {"api_calls": 1500}
    assert result.total_overage_amount == 1000
    [line] = result.overage_line_items
    assert (line.customer_id, line.usage_quantity, line.limit_value) == ("cust_a", 1200, 1000)
    assert (line.overage_quantity, line.overage_price, line.overage_amount) == (200, 5, 1000)
    assert result.finalized_at == RUN_AT
    assert billing_runs_total.value({"status": "finalized"}) == 1


def test_finalized_cycle_is_returned_unchanged(creator_id, metered):
    append_usage_event(metered.id, "cust_a", 1200, timestamp=IN_PERIOD)
    first = process_billing_cycle(creator_id, PERIOD, now=RUN_AT)

    # Late-arriving usage does not reopen a finalized period
    append_usage_event(metered.id, "cust_a", 800, timestamp=IN_PERIOD)
    second = process_billing_cycle(creator_id, PERIOD, now=datetime(2026, 4, 5, tzinfo=timezone.utc))

    assert second.model_dump_json() == first.model_dump_json()
    assert billing_runs_total.value({"status": "cached"}) == 1


def test_customer_failure_is_isolated_and_retried(creator_id, metered, monkeypatch):
    append_usage_event(metered.id, "cust_a", 1100, timestamp=IN_PERIOD)
    append_usage_event(metered.id, "cust_b", 1300, timestamp=IN_PERIOD)
    append_usage_event(metered.id, "cust_c", 1010, timestamp=IN_PERIOD)

    real_aggregate = billing_service.aggregate

    def flaky_aggregate(meter_id, customer_id, *args, **kwargs):
        if customer_id == "cust_b":
            raise RuntimeError("ledger read failed")
        return real_aggregate(meter_id, customer_id, *args, **kwargs)

    monkeypatch.setattr(billing_service, "aggregate", flaky_aggregate)
    partial = process_billing_cycle(creator_id, PERIOD, now=RUN_AT)

    assert partial.status.value == "partial"
    assert partial.customers_processed == 2
    assert [(f.customer_id, f.error, f.attempts) for f in partial.failed_customers] == [
        ("cust_b", "RuntimeError: ledger read failed", 1)
    ]
    assert partial.total_overage_amount == (100 + 10) * 5
    assert not is_locked(billing_lock_key(creator_id, PERIOD), now=RUN_AT)

    monkeypatch.setattr(billing_service, "aggregate", real_aggregate)
    retried = process_billing_cycle(creator_id, PERIOD, now=RUN_AT)

    assert retried.finalized is True
    assert retried.customers_processed == 3
    assert retried.failed_customers == []
    assert [line.customer_id for line in retried.overage_line_items] == ["cust_a", "cust_b", "cust_c"]
    assert retried.total_overage_amount == (100 + 300 + 10) * 5


def test_cancelled_run_is_partial_then_resumes(creator_id, metered):
    append_usage_event(metered.id, "cust_a", 1200, timestamp=IN_PERIOD)
    cancel = threading.Event()
    cancel.set()

    stopped = process_billing_cycle(creator_id, PERIOD, now=RUN_AT, cancel_event=cancel)
    assert stopped.status.value == "partial"
    assert stopped.customers_processed == 0
    assert stopped.total_overage_amount == 0

    resumed = process_billing_cycle(creator_id, PERIOD, now=RUN_AT)
    assert resumed.finalized is True
    assert resumed.total_overage_amount == 1000


def test_timeout_stops_between_customers(creator_id, metered):
    ticks = iter([0.0, 0.0, 10.0])

    result = process_billing_cycle(creator_id, PERIOD, now=RUN_AT, timeout_seconds=5, clock=lambda: next(ticks))

    assert result.status.value == "partial"
    assert result.customers_processed == 1


def test_concurrent_run_conflicts(creator_id, metered):
    key = billing_lock_key(creator_id, PERIOD)
    owner = acquire_lock(key, scope="billing", now=RUN_AT)

    with pytest.raises(ConflictError):
        process_billing_cycle(creator_id, PERIOD, now=RUN_AT)
    assert billing_runs_total.value({"status": "conflict"}) == 1
    assert get_billing_cycle_result(creator_id, PERIOD) is None

    release_lock(key, owner)
    assert process_billing_cycle(creator_id, PERIOD, now=RUN_AT).finalized is True


def test_expired_lock_is_taken_over(creator_id, metered):
    acquire_lock(billing_lock_key(creator_id, PERIOD), scope="billing", ttl_seconds=60, now=datetime(2026, 4, 1, tzinfo=timezone.utc))

    assert process_billing_cycle(creator_id, PERIOD, now=RUN_AT).finalized is True


def test_empty_creator_finalizes_with_zero_totals(creator_id):
    result = process_billing_cycle(creator_id, PERIOD, now=RUN_AT)

    assert result.finalized is True
    assert (result.customers_processed, result.total_overage_amount) == (0, 0)
    assert result.overage_line_items == []


@pytest.mark.parametrize("period", ["2026-13", "2026-3", "March", "", "2026-03\n", " 2026-03", "2026-03-01"])
def test_malformed_period_rejected(creator_id, period):
    with pytest.raises(ValidationError):
        process_billing_cycle(creator_id, period, now=RUN_AT)
    assert get_billing_cycle_result(creator_id, period) is None


def test_period_key_cannot_be_aliased(creator_id, metered):
    append_usage_event(metered.id, "cust_a", 1200, timestamp=IN_PERIOD)
    assert process_billing_cycle(creator_id, PERIOD, now=RUN_AT).total_overage_amount == 1000

    with pytest.raises(ValidationError):
        process_billing_cycle(creator_id, PERIOD + "\n", now=RUN_AT)
    assert resolve_closed_period(PERIOD, now=RUN_AT)[0] == PERIOD
    assert billing_runs_total.value({"status": "finalized"}) == 1


def test_open_period_is_not_billed(creator_id, metered):
    append_usage_event(metered.id, "cust_a", 500, timestamp=datetime(2026, 3, 15, tzinfo=timezone.utc))

    with pytest.raises(PreconditionError) as excinfo:
        process_billing_cycle(creator_id, PERIOD, now=datetime(2026, 3, 15, 12, tzinfo=timezone.utc))
    assert excinfo.value.details == {"billing_period": PERIOD, "closes_at": "2026-04-01T00:00:00+00:00"}
    assert get_billing_cycle_result(creator_id, PERIOD) is None
    assert is_locked(billing_lock_key(creator_id, PERIOD), now=RUN_AT) is False

    append_usage_event(metered.id, "cust_a", 700, timestamp=datetime(2026, 3, 20, tzinfo=timezone.utc))
    # The period closes exactly at its exclusive end
    result = process_billing_cycle(creator_id, PERIOD, now=datetime(2026, 4, 1, tzinfo=timezone.utc))

    assert result.finalized is True
    assert result.total_overage_amount == 1000
