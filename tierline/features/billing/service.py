"""
tierline/features/billing/service.py

Billing cycle processor.

Coordinates:
- Idempotency guard (finalized results are returned unchanged)
- Single-writer run lock per (creator_id, billing_period)
- Per-customer overage computation with atomic line-item writes
- Per-customer checkpoints so a retry resumes instead of restarting

Amounts are integer minor currency units. The engine computes what is owed;
the payment collaborator charges it.
"""
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, insert, select, update

from tierline.core.clock import ensure_utc, format_billing_period, normalize_now, parse_billing_period
from tierline.core.config import settings
from tierline.core.database import (
    billing_customer_checkpoints,
    billing_cycle_results,
    billing_line_items,
    get_db_session,
)
from tierline.core.errors import ConflictError, PreconditionError
from tierline.core.idempotency import acquire_lock, release_lock
from tierline.core.logging import log_event
from tierline.core.metrics import billing_customers_processed_total, billing_runs_total
from tierline.features.meters.service import get_meters
from tierline.features.tiers.service import get_tier, list_active_assignments, resolve_plan_limit
from tierline.features.usage.service import aggregate
from tierline.models.billing import (
    BillingCycleResult,
    BillingRunStatus,
    CustomerFailure,
    OverageLineItem,
)
from tierline.models.meter import BILLABLE_MODELS, Meter
from tierline.models.tier import CustomerTierAssignment

logger = logging.getLogger("tierline.billing")

CHECKPOINT_FINALIZED = "finalized"
CHECKPOINT_FAILED = "failed"
MAX_ERROR_LENGTH = 1000


def billing_lock_key(creator_id: str, billing_period: str) -> str:
    return f"billing:{creator_id}:{billing_period}"


def resolve_closed_period(billing_period: str, now: Optional[datetime] = None) -> Tuple[str, datetime, datetime]:
    """
    Canonical "YYYY-MM" key plus its [start, end) window.

    Raises:
        ValidationError: malformed billing_period
        PreconditionError: the period has not ended at `now`
    """
    start, end = parse_billing_period(billing_period)
    now_dt = normalize_now(now)
    if now_dt < end:
        raise PreconditionError(
            "Billing period has not closed yet",
            details={"billing_period": format_billing_period(start), "closes_at": end.isoformat()},
        )
    return format_billing_period(start), start, end


def compute_overage(usage: int, limit_value: Optional[int], overage_price: int) -> Dict[str, int]:
    """Overage quantity and amount for one customer x meter. No cap means no overage."""
    if limit_value is None:
        return {"overage_quantity": 0, "overage_amount": 0}
    quantity = max(0, usage - limit_value)
    return {"overage_quantity": quantity, "overage_amount": quantity * overage_price}


def _line_item_from_row(row) -> OverageLineItem:
    return OverageLineItem(
        customer_id=row.customer_id,
        tier_id=row.tier_id,
        meter_id=row.meter_id,
        event_name=row.event_name,
        usage_quantity=row.usage_quantity,
        limit_value=row.limit_value,
        overage_quantity=row.overage_quantity,
        overage_price=row.overage_price,
        overage_amount=row.overage_amount,
        currency=row.currency,
    )


def get_billing_cycle_result(creator_id: str, billing_period: str) -> Optional[BillingCycleResult]:
    """Stored result for a period, or None if no run has started."""
    with get_db_session() as session:
        row = session.execute(
            select(billing_cycle_results)
            .where(billing_cycle_results.c.creator_id == creator_id)
            .where(billing_cycle_results.c.billing_period == billing_period)
        ).first()
        if not row:
            return None
        lines = session.execute(
            select(billing_line_items)
            .where(billing_line_items.c.creator_id == creator_id)
            .where(billing_line_items.c.billing_period == billing_period)
            .where(billing_line_items.c.overage_quantity > 0)
            .order_by(billing_line_items.c.customer_id, billing_line_items.c.event_name)
        ).fetchall()
        checkpoints = session.execute(
            select(billing_customer_checkpoints)
            .where(billing_customer_checkpoints.c.creator_id == creator_id)
            .where(billing_customer_checkpoints.c.billing_period == billing_period)
            .order_by(billing_customer_checkpoints.c.customer_id)
        ).fetchall()

    return BillingCycleResult(
        creator_id=row.creator_id,
        billing_period=row.billing_period,
        status=row.status,
        per_meter_usage=row.per_meter_usage or {},
        overage_line_items=[_line_item_from_row(line) for line in lines],
        total_overage_amount=row.total_overage_amount,
        customers_processed=sum(1 for cp in checkpoints if cp.status == CHECKPOINT_FINALIZED),
        failed_customers=[
            CustomerFailure(customer_id=cp.customer_id, error=cp.error or "", attempts=cp.attempts)
            for cp in checkpoints
            if cp.status == CHECKPOINT_FAILED
        ],
        processed_at=ensure_utc(row.processed_at),
        finalized_at=ensure_utc(row.finalized_at),
    )


def _start_run(creator_id: str, billing_period: str, now: datetime) -> None:
    with get_db_session() as session:
        row = session.execute(
            select(billing_cycle_results.c.id, billing_cycle_results.c.attempts)
            .where(billing_cycle_results.c.creator_id == creator_id)
            .where(billing_cycle_results.c.billing_period == billing_period)
        ).first()
        if row:
            session.execute(
                update(billing_cycle_results)
                .where(billing_cycle_results.c.id == row.id)
                .values(status=BillingRunStatus.IN_PROGRESS.value, attempts=row.attempts + 1)
            )
        else:
            session.execute(
                insert(billing_cycle_results).values(
                    creator_id=creator_id,
                    billing_period=billing_period,
                    status=BillingRunStatus.IN_PROGRESS.value,
                    per_meter_usage={},
                    total_overage_amount=0,
                    attempts=1,
                    created_at=now,
                )
            )


def _checkpoint_statuses(creator_id: str, billing_period: str) -> Dict[str, str]:
    with get_db_session() as session:
        rows = session.execute(
            select(billing_customer_checkpoints.c.customer_id, billing_customer_checkpoints.c.status)
            .where(billing_customer_checkpoints.c.creator_id == creator_id)
            .where(billing_customer_checkpoints.c.billing_period == billing_period)
        ).fetchall()
    return {row.customer_id: row.status for row in rows}


def _write_checkpoint(session, creator_id: str, billing_period: str, customer_id: str, status: str, error: Optional[str], now: datetime) -> None:
    existing = session.execute(
        select(billing_customer_checkpoints.c.id, billing_customer_checkpoints.c.attempts)
        .where(billing_customer_checkpoints.c.creator_id == creator_id)
        .where(billing_customer_checkpoints.c.billing_period == billing_period)
        .where(billing_customer_checkpoints.c.customer_id == customer_id)
    ).first()
    if existing:
        session.execute(
            update(billing_customer_checkpoints)
            .where(billing_customer_checkpoints.c.id == existing.id)
            .values(status=status, error=error, attempts=existing.attempts + 1, updated_at=now)
        )
    else:
        session.execute(
            insert(billing_customer_checkpoints).values(
                creator_id=creator_id,
                billing_period=billing_period,
                customer_id=customer_id,
                status=status,
                error=error,
                attempts=1,
                updated_at=now,
            )
        )


def _bill_customer(
    creator_id: str,
    billing_period: str,
    assignment: CustomerTierAssignment,
    meters: List[Meter],
    start: datetime,
    end: datetime,
    now: datetime,
) -> int:
    """Compute and persist one customer's line items. Returns the overage amount."""
    tier = get_tier(assignment.tier_id, creator_id)
    rows = []
    for meter in meters:
        usage = aggregate(meter.id, assignment.customer_id, start, end, meter.aggregation_type, meter.unique_property)
        limit = resolve_plan_limit(meter, tier)
        limit_value = limit.limit_value if limit else None
        overage_price = limit.overage_price if limit else 0
        rows.append(
            {
                "creator_id": creator_id,
                "billing_period": billing_period,
                "customer_id": assignment.customer_id,
                "tier_id": tier.id,
                "meter_id": meter.id,
                "event_name": meter.event_name,
                "usage_quantity": usage,
                "limit_value": limit_value,
                "overage_price": overage_price,
                "currency": tier.currency,
                "created_at": now,
                **compute_overage(usage, limit_value, overage_price),
            }
        )

    # Line items and checkpoint commit together
    with get_db_session() as session:
        session.execute(
            delete(billing_line_items)
            .where(billing_line_items.c.creator_id == creator_id)
            .where(billing_line_items.c.billing_period == billing_period)
            .where(billing_line_items.c.customer_id == assignment.customer_id)
        )
        if rows:
            session.execute(insert(billing_line_items), rows)
        _write_checkpoint(session, creator_id, billing_period, assignment.customer_id, CHECKPOINT_FINALIZED, None, now)
    return sum(row["overage_amount"] for row in rows)


def _record_failure(creator_id: str, billing_period: str, customer_id: str, exc: Exception, now: datetime) -> None:
    error = f"{type(exc).__name__}: {exc}"[:MAX_ERROR_LENGTH]
    with get_db_session() as session:
        _write_checkpoint(session, creator_id, billing_period, customer_id, CHECKPOINT_FAILED, error, now)


def _finish_run(creator_id: str, billing_period: str, status: BillingRunStatus, now: datetime) -> None:
    with get_db_session() as session:
        lines = session.execute(
            select(
                billing_line_items.c.event_name,
                billing_line_items.c.usage_quantity,
                billing_line_items.c.overage_amount,
            )
            .where(billing_line_items.c.creator_id == creator_id)
            .where(billing_line_items.c.billing_period == billing_period)
        ).fetchall()

        per_meter_usage: Dict[str, int] = {}
        total = 0
        for line in lines:
            per_meter_usage[line.event_name] = per_meter_usage.get(line.event_name, 0) + line.usage_quantity
            total += line.overage_amount

        session.execute(
            update(billing_cycle_results)
            .where(billing_cycle_results.c.creator_id == creator_id)
            .where(billing_cycle_results.c.billing_period == billing_period)
            .values(
                status=status.value,
                per_meter_usage=dict(sorted(per_meter_usage.items())),
                total_overage_amount=total,
                processed_at=now,
                finalized_at=now if status == BillingRunStatus.FINALIZED else None,
            )
        )


def process_billing_cycle(
    creator_id: str,
    billing_period: str,
    *,
    now: Optional[datetime] = None,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
) -> BillingCycleResult:
    """
    Reconcile a creator's usage for a calendar month into overage line items.

    Args:
        creator_id: Creator whose customers are billed
        billing_period: "YYYY-MM"
        timeout_seconds: Stop between customers after this long (partial result)
        cancel_event: Set to stop between customers (partial result)

    Returns:
        BillingCycleResult. A finalized result is returned unchanged on every
        later call.

    Raises:
        ValidationError: malformed billing_period
        PreconditionError: the period has not ended yet
        ConflictError: another run for the same key holds the lock
    """
    now_dt = normalize_now(now)
    billing_period, start, end = resolve_closed_period(billing_period, now_dt)

    cached = get_billing_cycle_result(creator_id, billing_period)
    if cached is not None and cached.finalized:
        billing_runs_total.inc({"status": "cached"})
        logger.info("billing.cycle.cached", extra={"creator_id": creator_id, "billing_period": billing_period})
        return cached

    lock_key = billing_lock_key(creator_id, billing_period)
    owner = acquire_lock(lock_key, scope="billing", ttl_seconds=settings.BILLING_LOCK_TTL_SECONDS, now=now_dt)
    if owner is None:
        billing_runs_total.inc({"status": "conflict"})
        raise ConflictError(
            "Billing run already in progress",
            details={"creator_id": creator_id, "billing_period": billing_period},
        )

    try:
        # A concurrent run may have finalized while we waited for the lock
        cached = get_billing_cycle_result(creator_id, billing_period)
        if cached is not None and cached.finalized:
            return cached

        _start_run(creator_id, billing_period, now_dt)
        meters = sorted(
            (meter for meter in get_meters(creator_id) if meter.billing_model in BILLABLE_MODELS),
            key=lambda meter: meter.event_name,
        )
        assignments = list_active_assignments(creator_id, start, end)
        checkpoints = _checkpoint_statuses(creator_id, billing_period)
        budget = settings.BILLING_RUN_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        deadline = clock() + budget

        stopped: Optional[str] = None
        failures = 0
        for assignment in assignments:
            customer_id = assignment.customer_id
            if checkpoints.get(customer_id) == CHECKPOINT_FINALIZED:
                continue
            if cancel_event is not None and cancel_event.is_set():
                stopped = "cancelled"
                break
            if clock() >= deadline:
                stopped = "timeout"
                break

            try:
                amount = _bill_customer(creator_id, billing_period, assignment, meters, start, end, now_dt)
            except Exception as exc:
                failures += 1
                billing_customers_processed_total.inc({"status": CHECKPOINT_FAILED})
                logger.error(
                    "billing.customer.failed",
                    exc_info=True,
                    extra={"creator_id": creator_id, "customer_id": customer_id, "billing_period": billing_period},
                )
                _record_failure(creator_id, billing_period, customer_id, exc, now_dt)
                continue

            checkpoints[customer_id] = CHECKPOINT_FINALIZED
            billing_customers_processed_total.inc({"status": CHECKPOINT_FINALIZED})
            logger.debug(
                "billing.customer.finalized",
                extra={"creator_id": creator_id, "customer_id": customer_id, "outcome": str(amount)},
            )

        complete = stopped is None and failures == 0 and all(
            checkpoints.get(a.customer_id) == CHECKPOINT_FINALIZED for a in assignments
        )
        status = BillingRunStatus.FINALIZED if complete else BillingRunStatus.PARTIAL
        _finish_run(creator_id, billing_period, status, now_dt)
    finally:
        release_lock(lock_key, owner)

    billing_runs_total.inc({"status": status.value})
    result = get_billing_cycle_result(creator_id, billing_period)
    log_event(
        "info",
        "billing.cycle.processed",
        creator_id=creator_id,
        extra={
            "billing_period": billing_period,
            "status": status.value,
            "stopped": stopped,
            "customers_processed": result.customers_processed,
            "failed_customers": len(result.failed_customers),
            "total_overage_amount": result.total_overage_amount,
        },
    )
    return result
