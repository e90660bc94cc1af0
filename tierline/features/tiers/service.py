"""
tierline/features/tiers/service.py

Tier & limit model.

Handles:
- Tier CRUD (one default tier per creator, names unique per creator)
- Customer assignment lifecycle (driven by the payment collaborator)
- Limit resolution shared by enforcement, billing and warnings
- Tier info and upgrade options for a customer
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from tierline.core.clock import add_months, ensure_utc, month_start, normalize_now, through
from tierline.core.config import settings
from tierline.core.database import customer_tier_assignments, get_db_session, subscription_tiers
from tierline.core.errors import ConflictError, NotFoundError, ValidationError
from tierline.features.meters.service import get_meters
from tierline.features.usage.service import aggregate
from tierline.models.meter import Meter, PlanLimit
from tierline.models.tier import (
    ACTIVE_STATUSES,
    AssignmentStatus,
    BillingCycle,
    CustomerTierAssignment,
    CustomerTierInfo,
    MeterUsageSummary,
    RelievedMeter,
    SubscriptionTier,
    TierInput,
    TierUpdate,
    TierUpgradeOption,
)

logger = logging.getLogger("tierline.tiers")


def _invalidate_cache() -> None:
    from tierline.features.enforcement.cache import limit_cache

    limit_cache.invalidate()


def _row_to_tier(row) -> SubscriptionTier:
    return SubscriptionTier(
        id=row.id,
        creator_id=row.creator_id,
        name=row.name,
        description=row.description,
        price=row.price,
        currency=row.currency,
        billing_cycle=row.billing_cycle,
        feature_entitlements=row.feature_entitlements or [],
        usage_caps=row.usage_caps or {},
        is_default=bool(row.is_default),
        active=bool(row.active),
        trial_period_days=row.trial_period_days,
        sort_order=row.sort_order,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _row_to_assignment(row) -> CustomerTierAssignment:
    return CustomerTierAssignment(
        id=row.id,
        customer_id=row.customer_id,
        creator_id=row.creator_id,
        tier_id=row.tier_id,
        status=row.status,
        period_start=ensure_utc(row.period_start),
        period_end=ensure_utc(row.period_end),
        trial_end=ensure_utc(row.trial_end),
    )


def _validate_caps(caps: Dict[str, int]) -> None:
    for name, cap in caps.items():
        if isinstance(cap, bool) or not isinstance(cap, int) or cap < 0:
            raise ValidationError(f"usage cap for {name!r} must be a non-negative integer")


def _coerce(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid tier: {exc.errors()[0].get('msg')}") from exc


def _demote_defaults(session, creator_id: str, keep_id: str, now: datetime) -> None:
    session.execute(
        update(subscription_tiers)
        .where(subscription_tiers.c.creator_id == creator_id)
        .where(subscription_tiers.c.id != keep_id)
        .where(subscription_tiers.c.is_default.is_(True))
        .values(is_default=False, updated_at=now)
    )


def _name_taken(session, creator_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
    stmt = (
        select(subscription_tiers.c.id)
        .where(subscription_tiers.c.creator_id == creator_id)
        .where(func.lower(subscription_tiers.c.name) == name.lower())
    )
    if exclude_id:
        stmt = stmt.where(subscription_tiers.c.id != exclude_id)
    return session.execute(stmt).first() is not None


def _conflicting_currency(session, creator_id: str, currency: str, exclude_id: Optional[str] = None) -> Optional[str]:
    """Currency already used by another of the creator's tiers, if it differs from `currency`."""
    stmt = (
        select(subscription_tiers.c.currency)
        .where(subscription_tiers.c.creator_id == creator_id)
        .where(subscription_tiers.c.currency != currency)
    )
    if exclude_id:
        stmt = stmt.where(subscription_tiers.c.id != exclude_id)
    row = session.execute(stmt.limit(1)).first()
    return row.currency if row else None


def _mixed_currency_error(currency: str, existing: str) -> ConflictError:
    return ConflictError(
        f"Tier currency {currency!r} differs from this creator's {existing!r}; overage totals are single-currency",
        details={"currency": currency, "existing_currency": existing},
    )


def create_tier(creator_id: str, data, now: Optional[datetime] = None) -> SubscriptionTier:
    """
    Create a tier.

    Raises:
        ValidationError: bad shape or caps
        ConflictError: tier name already used by this creator, or its
            currency differs from the creator's other tiers
    """
    if not creator_id:
        raise ValidationError("creator_id is required")
    data = _coerce(TierInput, data)
    _validate_caps(data.usage_caps)
    now_dt = normalize_now(now)
    tier_id = str(uuid4())
    name = data.name.strip()

    try:
        with get_db_session() as session:
            if _name_taken(session, creator_id, name):
                raise ConflictError(f"Tier {name!r} already exists for this creator")
            currency = data.currency.lower()
            existing_currency = _conflicting_currency(session, creator_id, currency)
            if existing_currency:
                raise _mixed_currency_error(currency, existing_currency)
            session.execute(
                insert(subscription_tiers).values(
                    id=tier_id,
                    creator_id=creator_id,
                    name=name,
                    description=data.description,
                    price=data.price,
                    currency=currency,
                    billing_cycle=data.billing_cycle.value,
                    feature_entitlements=list(data.feature_entitlements),
                    usage_caps=dict(data.usage_caps),
                    is_default=data.is_default,
                    active=data.active,
                    trial_period_days=data.trial_period_days,
                    sort_order=data.sort_order,
                    created_at=now_dt,
                    updated_at=now_dt,
                )
            )
            if data.is_default:
                _demote_defaults(session, creator_id, tier_id, now_dt)
    except IntegrityError as exc:
        raise ConflictError(f"Tier {name!r} already exists for this creator") from exc

    _invalidate_cache()
    logger.info("tier.created", extra={"creator_id": creator_id, "outcome": tier_id})
    return get_tier(tier_id, creator_id)


def update_tier(tier_id: str, creator_id: str, changes, now: Optional[datetime] = None) -> SubscriptionTier:
    """
    Apply a partial update.

    Cap changes only affect enforcement and future billing runs; finalized
    billing results are stored values and are never recomputed.
    """
    changes = _coerce(TierUpdate, changes)
    values = changes.model_dump(exclude_unset=True)
    now_dt = normalize_now(now)

    if "usage_caps" in values and values["usage_caps"] is not None:
        _validate_caps(values["usage_caps"])
    if values.get("billing_cycle") is not None:
        values["billing_cycle"] = BillingCycle(values["billing_cycle"]).value
    if values.get("currency"):
        values["currency"] = values["currency"].lower()
    if values.get("name"):
        values["name"] = values["name"].strip()
    values = {key: value for key, value in values.items() if value is not None or key == "description"}

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(subscription_tiers.c.id)
                .where(subscription_tiers.c.id == tier_id)
                .where(subscription_tiers.c.creator_id == creator_id)
            ).first()
            if not existing:
                raise NotFoundError(f"Tier {tier_id} not found")
            if values.get("name") and _name_taken(session, creator_id, values["name"], exclude_id=tier_id):
                raise ConflictError(f"Tier {values['name']!r} already exists for this creator")
            if values.get("currency"):
                existing_currency = _conflicting_currency(session, creator_id, values["currency"], exclude_id=tier_id)
                if existing_currency:
                    raise _mixed_currency_error(values["currency"], existing_currency)

            values["updated_at"] = now_dt
            session.execute(
                update(subscription_tiers).where(subscription_tiers.c.id == tier_id).values(**values)
            )
            if values.get("is_default"):
                _demote_defaults(session, creator_id, tier_id, now_dt)
    except IntegrityError as exc:
        raise ConflictError("Tier name already exists for this creator") from exc

    _invalidate_cache()
    logger.info("tier.updated", extra={"creator_id": creator_id, "outcome": tier_id})
    return get_tier(tier_id, creator_id)


def delete_tier(tier_id: str, creator_id: str) -> None:
    """
    Delete a tier.

    Raises:
        NotFoundError: unknown tier
        ConflictError: the tier still has active, trialing or past-due customers
    """
    with get_db_session() as session:
        existing = session.execute(
            select(subscription_tiers.c.id)
            .where(subscription_tiers.c.id == tier_id)
            .where(subscription_tiers.c.creator_id == creator_id)
        ).first()
        if not existing:
            raise NotFoundError(f"Tier {tier_id} not found")

        active_count = session.execute(
            select(func.count())
            .select_from(customer_tier_assignments)
            .where(customer_tier_assignments.c.tier_id == tier_id)
            .where(customer_tier_assignments.c.status.in_(ACTIVE_STATUSES))
        ).scalar_one()
        if active_count:
            raise ConflictError(
                "Tier has active assignments and cannot be deleted",
                details={"active_assignments": active_count},
            )
        session.execute(delete(subscription_tiers).where(subscription_tiers.c.id == tier_id))

    _invalidate_cache()
    logger.info("tier.deleted", extra={"creator_id": creator_id, "outcome": tier_id})


def get_tier(tier_id: str, creator_id: str) -> SubscriptionTier:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_tiers)
            .where(subscription_tiers.c.id == tier_id)
            .where(subscription_tiers.c.creator_id == creator_id)
        ).first()
    if not row:
        raise NotFoundError(f"Tier {tier_id} not found")
    return _row_to_tier(row)


def list_tiers(creator_id: str, include_inactive: bool = False) -> List[SubscriptionTier]:
    stmt = select(subscription_tiers).where(subscription_tiers.c.creator_id == creator_id)
    if not include_inactive:
        stmt = stmt.where(subscription_tiers.c.active.is_(True))
    stmt = stmt.order_by(subscription_tiers.c.sort_order, subscription_tiers.c.price, subscription_tiers.c.name)
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [_row_to_tier(row) for row in rows]


def get_default_tier(creator_id: str) -> Optional[SubscriptionTier]:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_tiers)
            .where(subscription_tiers.c.creator_id == creator_id)
            .where(subscription_tiers.c.is_default.is_(True))
            .where(subscription_tiers.c.active.is_(True))
        ).first()
    return _row_to_tier(row) if row else None


# Assignments

def _period_end(start: datetime, cycle: BillingCycle) -> datetime:
    if cycle == BillingCycle.DAILY:
        return start + timedelta(days=1)
    if cycle == BillingCycle.WEEKLY:
        return start + timedelta(days=7)
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def get_active_assignment(customer_id: str, creator_id: str) -> Optional[CustomerTierAssignment]:
    with get_db_session() as session:
        row = session.execute(
            select(customer_tier_assignments)
            .where(customer_tier_assignments.c.customer_id == customer_id)
            .where(customer_tier_assignments.c.creator_id == creator_id)
            .where(customer_tier_assignments.c.status.in_(ACTIVE_STATUSES))
            .order_by(customer_tier_assignments.c.period_start.desc())
        ).first()
    return _row_to_assignment(row) if row else None


def list_active_assignments(
    creator_id: str,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> List[CustomerTierAssignment]:
    """Active assignments for a creator, optionally those overlapping [period_start, period_end)."""
    stmt = (
        select(customer_tier_assignments)
        .where(customer_tier_assignments.c.creator_id == creator_id)
        .where(customer_tier_assignments.c.status.in_(ACTIVE_STATUSES))
    )
    if period_end is not None:
        stmt = stmt.where(customer_tier_assignments.c.period_start < ensure_utc(period_end))
    with get_db_session() as session:
        rows = session.execute(stmt.order_by(customer_tier_assignments.c.customer_id)).fetchall()

    assignments = [_row_to_assignment(row) for row in rows]
    if period_start is not None:
        start = ensure_utc(period_start)
        assignments = [a for a in assignments if a.period_end is None or a.period_end > start]
    return assignments


def assign_customer_to_tier(
    customer_id: str,
    creator_id: str,
    tier_id: str,
    now: Optional[datetime] = None,
) -> CustomerTierAssignment:
    """
    Make `tier_id` the customer's active tier, canceling any previous assignment.

    Raises:
        ConflictError: a concurrent assignment for the same customer won
    """
    if not customer_id:
        raise ValidationError("customer_id is required")
    tier = get_tier(tier_id, creator_id)
    if not tier.active:
        raise ValidationError(f"Tier {tier.name!r} is not active")

    now_dt = normalize_now(now)
    trial_end = now_dt + timedelta(days=tier.trial_period_days) if tier.trial_period_days else None
    status = AssignmentStatus.TRIALING if trial_end else AssignmentStatus.ACTIVE
    assignment_id = str(uuid4())

    try:
        with get_db_session() as session:
            session.execute(
                update(customer_tier_assignments)
                .where(customer_tier_assignments.c.customer_id == customer_id)
                .where(customer_tier_assignments.c.creator_id == creator_id)
                .where(customer_tier_assignments.c.status.in_(ACTIVE_STATUSES))
                .values(status=AssignmentStatus.CANCELED.value, updated_at=now_dt)
            )
            session.execute(
                insert(customer_tier_assignments).values(
                    id=assignment_id,
                    customer_id=customer_id,
                    creator_id=creator_id,
                    tier_id=tier.id,
                    status=status.value,
                    period_start=now_dt,
                    period_end=_period_end(now_dt, tier.billing_cycle),
                    trial_end=trial_end,
                    created_at=now_dt,
                    updated_at=now_dt,
                )
            )
    except IntegrityError as exc:
        # Another assignment for this customer committed first
        raise ConflictError(
            "Concurrent tier assignment for this customer",
            details={"customer_id": customer_id},
        ) from exc

    _invalidate_cache()
    logger.info(
        "tier.assigned",
        extra={"creator_id": creator_id, "customer_id": customer_id, "outcome": status.value},
    )
    return get_active_assignment(customer_id, creator_id)


def apply_subscription_status(
    customer_id: str,
    creator_id: str,
    status: str,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> CustomerTierAssignment:
    """
    Record a subscription status change reported by the payment collaborator.

    Applies to the customer's most recent assignment for this creator.
    """
    try:
        new_status = AssignmentStatus(status)
    except ValueError as exc:
        raise ValidationError(f"Unknown subscription status {status!r}") from exc
    now_dt = normalize_now(now)

    with get_db_session() as session:
        row = session.execute(
            select(customer_tier_assignments)
            .where(customer_tier_assignments.c.customer_id == customer_id)
            .where(customer_tier_assignments.c.creator_id == creator_id)
            .order_by(customer_tier_assignments.c.created_at.desc())
        ).first()
        if not row:
            raise NotFoundError(f"No tier assignment for customer {customer_id}")

        values = {"status": new_status.value, "updated_at": now_dt}
        if period_start is not None:
            values["period_start"] = ensure_utc(period_start)
        if period_end is not None:
            values["period_end"] = ensure_utc(period_end)
        session.execute(
            update(customer_tier_assignments).where(customer_tier_assignments.c.id == row.id).values(**values)
        )
        updated = session.execute(
            select(customer_tier_assignments).where(customer_tier_assignments.c.id == row.id)
        ).first()

    _invalidate_cache()
    logger.info(
        "tier.status_changed",
        extra={"creator_id": creator_id, "customer_id": customer_id, "outcome": new_status.value},
    )
    return _row_to_assignment(updated)


# Limit resolution

def resolve_plan_limit(meter: Meter, tier: Optional[SubscriptionTier]) -> Optional[PlanLimit]:
    """
    The limit that applies to `meter` for customers on `tier`.

    Precedence: the meter's PlanLimit named after the tier (case-insensitive),
    then the tier's usage_caps[event_name]. None means unlimited.
    """
    if tier is None:
        return None
    limit = meter.limit_for_plan(tier.name)
    if limit is not None:
        return limit
    cap = tier.usage_caps.get(meter.event_name)
    if cap is None:
        return None
    return PlanLimit(
        plan_name=tier.name,
        limit_value=cap,
        overage_price=0,
        soft_limit_threshold=settings.DEFAULT_SOFT_LIMIT_THRESHOLD,
        hard_cap=settings.USAGE_CAP_HARD_BY_DEFAULT,
    )


def threshold_reached(usage: int, limit: PlanLimit) -> bool:
    if limit.limit_value is None:
        return False
    return Decimal(usage) >= Decimal(str(limit.soft_limit_threshold)) * Decimal(limit.limit_value)


def current_window(assignment: Optional[CustomerTierAssignment], now: datetime) -> Tuple[datetime, datetime]:
    """Usage window for enforcement: assignment period start (or month start) through now."""
    start = assignment.period_start if assignment else month_start(now)
    return start, through(now)


def _usage_for(meter: Meter, customer_id: str, window: Tuple[datetime, datetime]) -> int:
    return aggregate(meter.id, customer_id, window[0], window[1], meter.aggregation_type, meter.unique_property)


def get_customer_tier_info(
    customer_id: str,
    creator_id: str,
    now: Optional[datetime] = None,
) -> Optional[CustomerTierInfo]:
    """
    Tier, entitlements and current-period usage for a customer.

    Returns None when the customer has no active assignment; callers treat
    that as default/free behavior.
    """
    assignment = get_active_assignment(customer_id, creator_id)
    if assignment is None:
        return None
    tier = get_tier(assignment.tier_id, creator_id)
    window = current_window(assignment, normalize_now(now))

    summary: Dict[str, MeterUsageSummary] = {}
    for meter in get_meters(creator_id):
        if not meter.active:
            continue
        usage = _usage_for(meter, customer_id, window)
        limit = resolve_plan_limit(meter, tier)
        limit_value = limit.limit_value if limit else None
        summary[meter.event_name] = MeterUsageSummary(
            event_name=meter.event_name,
            current_usage=usage,
            limit_value=limit_value,
            usage_fraction=(usage / limit_value) if limit_value else None,
            overage_quantity=max(0, usage - limit_value) if limit_value is not None else 0,
            hard_cap=bool(limit and limit.hard_cap),
        )

    return CustomerTierInfo(
        tier=tier,
        assignment=assignment,
        entitlements=list(tier.feature_entitlements),
        usage_caps=dict(tier.usage_caps),
        usage_summary=summary,
        next_billing_date=assignment.period_end,
    )


def _pressure_state(usage: int, limit: Optional[PlanLimit]) -> Optional[str]:
    if limit is None or limit.limit_value is None:
        return None
    if usage >= limit.limit_value:
        return "exceeded"
    if threshold_reached(usage, limit):
        return "near_limit"
    return None


def _relieved_by(usage: int, state: str, candidate: Optional[PlanLimit]) -> bool:
    if candidate is None or candidate.limit_value is None:
        return True
    if state == "exceeded":
        return usage < candidate.limit_value
    return not threshold_reached(usage, candidate)


def get_tier_upgrade_options(
    customer_id: str,
    creator_id: str,
    now: Optional[datetime] = None,
) -> List[TierUpgradeOption]:
    """
    Active tiers priced above the customer's current tier.

    Each option lists the meters currently exceeded or near their limit that
    the upgrade would relieve. Ranked by relieved count (desc), then price.
    """
    now_dt = normalize_now(now)
    assignment = get_active_assignment(customer_id, creator_id)
    current_tier = get_tier(assignment.tier_id, creator_id) if assignment else get_default_tier(creator_id)
    current_price = current_tier.price if current_tier else -1
    window = current_window(assignment, now_dt)

    pressured = []
    for meter in get_meters(creator_id):
        if not meter.active:
            continue
        usage = _usage_for(meter, customer_id, window)
        limit = resolve_plan_limit(meter, current_tier)
        state = _pressure_state(usage, limit)
        if state:
            pressured.append((meter, usage, limit, state))

    options = []
    for tier in list_tiers(creator_id):
        if tier.price <= current_price or (current_tier and tier.id == current_tier.id):
            continue
        relieves = []
        for meter, usage, limit, state in pressured:
            candidate = resolve_plan_limit(meter, tier)
            if _relieved_by(usage, state, candidate):
                relieves.append(
                    RelievedMeter(
                        event_name=meter.event_name,
                        current_usage=usage,
                        current_limit=limit.limit_value,
                        new_limit=candidate.limit_value if candidate else None,
                        state=state,
                    )
                )
        options.append((tier, relieves))

    options.sort(key=lambda item: (-len(item[1]), item[0].price, item[0].sort_order, item[0].name))
    base_price = current_tier.price if current_tier else 0
    return [
        TierUpgradeOption(
            tier=tier,
            price_difference=tier.price - base_price,
            relieves=relieves,
            recommended=(index == 0 and bool(relieves)),
        )
        for index, (tier, relieves) in enumerate(options)
    ]
