"""
tierline/features/meters/service.py

Meter registry.

Handles:
- Meter creation with enum and threshold validation
- Plan limit replacement (atomic, guarded against removing live limits)
- Soft deletion (events are never removed)
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from tierline.core.clock import ensure_utc, normalize_now
from tierline.core.config import settings
from tierline.core.database import (
    customer_tier_assignments,
    get_db_session,
    meter_plan_limits,
    subscription_tiers,
    usage_meters,
)
from tierline.core.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from tierline.models.meter import (
    AggregationType,
    BillingModel,
    Meter,
    MeterDefinition,
    PlanLimit,
    PlanLimitInput,
)
from tierline.models.tier import ACTIVE_STATUSES

logger = logging.getLogger("tierline.meters")

_AGGREGATION_TYPES = {item.value for item in AggregationType}
_BILLING_MODELS = {item.value for item in BillingModel}


def _invalidate_cache() -> None:
    from tierline.features.enforcement.cache import limit_cache

    limit_cache.invalidate()


def _coerce_definition(definition) -> MeterDefinition:
    if isinstance(definition, MeterDefinition):
        return definition
    try:
        return MeterDefinition.model_validate(definition)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid meter definition: {exc.errors()[0].get('msg')}") from exc


def _coerce_limits(limits: Iterable) -> List[PlanLimitInput]:
    coerced = []
    for item in limits:
        if isinstance(item, PlanLimitInput):
            coerced.append(item)
            continue
        try:
            coerced.append(PlanLimitInput.model_validate(item))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid plan limit: {exc.errors()[0].get('msg')}") from exc
    return coerced


def _validate_limits(limits: List[PlanLimitInput]) -> List[PlanLimit]:
    seen = set()
    resolved = []
    for item in limits:
        key = item.plan_name.strip().lower()
        if key in seen:
            raise ValidationError(f"Duplicate plan limit for plan {item.plan_name!r}")
        seen.add(key)

        threshold = item.soft_limit_threshold
        if threshold is None:
            threshold = settings.DEFAULT_SOFT_LIMIT_THRESHOLD
        if not 0 < threshold <= 1:
            raise ValidationError(
                f"soft_limit_threshold must be in (0, 1], got {threshold}",
                details={"plan_name": item.plan_name},
            )
        resolved.append(
            PlanLimit(
                plan_name=item.plan_name.strip(),
                limit_value=item.limit_value,
                overage_price=item.overage_price,
                soft_limit_threshold=threshold,
                hard_cap=item.hard_cap,
            )
        )
    return resolved


def _limit_rows(meter_id: str, limits: List[PlanLimit], now: datetime) -> List[Dict]:
    return [
        {
            "meter_id": meter_id,
            "plan_name": limit.plan_name,
            "position": position,
            "limit_value": limit.limit_value,
            "overage_price": limit.overage_price,
            "soft_limit_threshold": limit.soft_limit_threshold,
            "hard_cap": limit.hard_cap,
            "created_at": now,
        }
        for position, limit in enumerate(limits)
    ]


def _load_limits(session, meter_ids: List[str]) -> Dict[str, List[PlanLimit]]:
    by_meter: Dict[str, List[PlanLimit]] = {meter_id: [] for meter_id in meter_ids}
    if not meter_ids:
        return by_meter
    rows = session.execute(
        select(meter_plan_limits)
        .where(meter_plan_limits.c.meter_id.in_(meter_ids))
        .order_by(meter_plan_limits.c.meter_id, meter_plan_limits.c.position)
    ).fetchall()
    for row in rows:
        by_meter[row.meter_id].append(
            PlanLimit(
                plan_name=row.plan_name,
                limit_value=row.limit_value,
                overage_price=row.overage_price,
                soft_limit_threshold=row.soft_limit_threshold,
                hard_cap=bool(row.hard_cap),
            )
        )
    return by_meter


def _row_to_meter(row, limits: List[PlanLimit]) -> Meter:
    return Meter(
        id=row.id,
        creator_id=row.creator_id,
        event_name=row.event_name,
        display_name=row.display_name,
        description=row.description,
        aggregation_type=row.aggregation_type,
        unit_name=row.unit_name,
        billing_model=row.billing_model,
        unique_property=row.unique_property,
        active=bool(row.active),
        deleted_at=ensure_utc(row.deleted_at),
        plan_limits=limits,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def create_meter(creator_id: str, definition, now: Optional[datetime] = None) -> Meter:
    """
    Register a meter for a creator.

    Raises:
        ValidationError: unknown aggregation type or billing model, bad threshold
        ConflictError: event_name already registered for this creator
    """
    if not creator_id:
        raise ValidationError("creator_id is required")
    definition = _coerce_definition(definition)

    if definition.aggregation_type not in _AGGREGATION_TYPES:
        raise ValidationError(
            f"aggregation_type must be one of {sorted(_AGGREGATION_TYPES)}, got {definition.aggregation_type!r}"
        )
    if definition.billing_model not in _BILLING_MODELS:
        raise ValidationError(
            f"billing_model must be one of {sorted(_BILLING_MODELS)}, got {definition.billing_model!r}"
        )
    limits = _validate_limits(definition.plan_limits)

    now_dt = normalize_now(now)
    meter_id = str(uuid4())
    event_name = definition.event_name.strip()

    try:
        with get_db_session() as session:
            exists = session.execute(
                select(usage_meters.c.id)
                .where(usage_meters.c.creator_id == creator_id)
                .where(usage_meters.c.event_name == event_name)
            ).first()
            if exists:
                raise ConflictError(f"Meter {event_name!r} already exists for this creator")

            session.execute(
                insert(usage_meters).values(
                    id=meter_id,
                    creator_id=creator_id,
                    event_name=event_name,
                    display_name=definition.display_name or event_name,
                    description=definition.description,
                    aggregation_type=definition.aggregation_type,
                    unit_name=definition.unit_name,
                    billing_model=definition.billing_model,
                    unique_property=definition.unique_property,
                    active=True,
                    deleted_at=None,
                    created_at=now_dt,
                    updated_at=now_dt,
                )
            )
            if limits:
                session.execute(insert(meter_plan_limits), _limit_rows(meter_id, limits, now_dt))
    except IntegrityError as exc:
        # Concurrent create for the same event_name
        raise ConflictError(f"Meter {event_name!r} already exists for this creator") from exc

    _invalidate_cache()
    logger.info(
        "meter.created",
        extra={"creator_id": creator_id, "meter_id": meter_id, "event_name": event_name},
    )
    return get_meter(meter_id, creator_id)


def get_meters(creator_id: str) -> List[Meter]:
    """All meters for a creator, soft-deleted ones included (flagged by active=False)."""
    with get_db_session() as session:
        rows = session.execute(
            select(usage_meters)
            .where(usage_meters.c.creator_id == creator_id)
            .order_by(usage_meters.c.created_at, usage_meters.c.event_name)
        ).fetchall()
        limits = _load_limits(session, [row.id for row in rows])
    return [_row_to_meter(row, limits[row.id]) for row in rows]


def get_meter(meter_id: str, creator_id: str) -> Meter:
    with get_db_session() as session:
        row = session.execute(
            select(usage_meters)
            .where(usage_meters.c.id == meter_id)
            .where(usage_meters.c.creator_id == creator_id)
        ).first()
        if not row:
            raise NotFoundError(f"Meter {meter_id} not found")
        limits = _load_limits(session, [row.id])
    return _row_to_meter(row, limits[row.id])


def get_meter_by_event(creator_id: str, event_name: str, include_deleted: bool = False) -> Optional[Meter]:
    stmt = (
        select(usage_meters)
        .where(usage_meters.c.creator_id == creator_id)
        .where(usage_meters.c.event_name == event_name)
    )
    if not include_deleted:
        stmt = stmt.where(usage_meters.c.active.is_(True))
    with get_db_session() as session:
        row = session.execute(stmt).first()
        if not row:
            return None
        limits = _load_limits(session, [row.id])
    return _row_to_meter(row, limits[row.id])


def resolve_meter(creator_id: str, meter_or_event_name: str) -> Meter:
    """Look up an active meter by event name, falling back to its id."""
    meter = get_meter_by_event(creator_id, meter_or_event_name)
    if meter:
        return meter
    try:
        meter = get_meter(meter_or_event_name, creator_id)
    except NotFoundError:
        meter = None
    if meter is None or not meter.active:
        raise NotFoundError(f"Meter {meter_or_event_name!r} not found")
    return meter


def _active_tier_names(session, creator_id: str) -> set:
    rows = session.execute(
        select(func.lower(subscription_tiers.c.name))
        .select_from(
            subscription_tiers.join(
                customer_tier_assignments,
                customer_tier_assignments.c.tier_id == subscription_tiers.c.id,
            )
        )
        .where(subscription_tiers.c.creator_id == creator_id)
        .where(customer_tier_assignments.c.status.in_(ACTIVE_STATUSES))
        .distinct()
    ).fetchall()
    return {row[0] for row in rows}


def update_plan_limits(
    meter_id: str,
    creator_id: str,
    limits: Iterable,
    allow_migration: bool = False,
    now: Optional[datetime] = None,
) -> Meter:
    """
    Replace a meter's limit set atomically.

    A limit whose plan name matches a tier that still has active customers
    can only be dropped with allow_migration=True.

    Raises:
        NotFoundError: unknown meter
        ValidationError: bad threshold or duplicate plan names
        PreconditionError: would remove a limit referenced by an active tier
    """
    new_limits = _validate_limits(_coerce_limits(limits))
    now_dt = normalize_now(now)

    with get_db_session() as session:
        row = session.execute(
            select(usage_meters.c.id)
            .where(usage_meters.c.id == meter_id)
            .where(usage_meters.c.creator_id == creator_id)
        ).first()
        if not row:
            raise NotFoundError(f"Meter {meter_id} not found")

        current = _load_limits(session, [meter_id])[meter_id]
        kept = {limit.plan_name.lower() for limit in new_limits}
        removed = {limit.plan_name.lower() for limit in current} - kept

        if removed and not allow_migration:
            referenced = sorted(removed & _active_tier_names(session, creator_id))
            if referenced:
                raise PreconditionError(
                    "Cannot remove plan limits referenced by active tiers",
                    details={"plan_names": referenced},
                )

        session.execute(delete(meter_plan_limits).where(meter_plan_limits.c.meter_id == meter_id))
        if new_limits:
            session.execute(insert(meter_plan_limits), _limit_rows(meter_id, new_limits, now_dt))
        session.execute(
            update(usage_meters).where(usage_meters.c.id == meter_id).values(updated_at=now_dt)
        )

    _invalidate_cache()
    logger.info(
        "meter.limits_updated",
        extra={"creator_id": creator_id, "meter_id": meter_id, "outcome": f"{len(new_limits)} limits"},
    )
    return get_meter(meter_id, creator_id)


def delete_meter(meter_id: str, creator_id: str, now: Optional[datetime] = None) -> Meter:
    """Soft delete: the meter stops accepting events, its history stays."""
    now_dt = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(usage_meters)
            .where(usage_meters.c.id == meter_id)
            .where(usage_meters.c.creator_id == creator_id)
            .values(active=False, deleted_at=now_dt, updated_at=now_dt)
        )
        if not result.rowcount:
            raise NotFoundError(f"Meter {meter_id} not found")

    _invalidate_cache()
    logger.info("meter.deleted", extra={"creator_id": creator_id, "meter_id": meter_id})
    return get_meter(meter_id, creator_id)
