"""
tierline/features/usage/service.py

Usage ledger.

Handles:
- Append-only event writes (idempotent on event_id)
- Deterministic event queries over half-open [start, end) windows
- The aggregation primitive shared by enforcement, billing and analytics
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from tierline.core.clock import ensure_utc, normalize_now
from tierline.core.database import get_db_session, usage_events
from tierline.core.errors import ValidationError
from tierline.core.metrics import usage_events_appended_total
from tierline.models.meter import AggregationType
from tierline.models.usage_event import AppendResult, UsageEvent, UsageProperties

logger = logging.getLogger("tierline.usage")


def normalize_properties(properties: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate a properties map into its stored form (well-known keys by field name)."""
    if properties is None:
        return {}
    if isinstance(properties, UsageProperties):
        return properties.to_storage()
    try:
        return UsageProperties.model_validate(dict(properties)).to_storage()
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid event properties: {exc.errors()[0].get('msg')}") from exc
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid event properties: {exc}") from exc


def validate_event_value(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Event value must be an integer, got {value!r}")
    if value < 0:
        raise ValidationError(f"Event value must be non-negative, got {value}")
    return value


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row.id,
        meter_id=row.meter_id,
        subscriber_id=row.subscriber_id,
        event_value=row.event_value,
        properties=row.properties or {},
        timestamp=ensure_utc(row.occurred_at),
        created_at=ensure_utc(row.created_at),
    )


def get_usage_event(event_id: str) -> Optional[UsageEvent]:
    with get_db_session() as session:
        row = session.execute(select(usage_events).where(usage_events.c.id == event_id)).first()
    return _row_to_event(row) if row else None


def append_usage_event(
    meter_id: str,
    subscriber_id: str,
    value: int = 1,
    properties: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
    event_id: Optional[str] = None,
    *,
    aggregation: str = "unknown",
    now: Optional[datetime] = None,
) -> AppendResult:
    """
    Append one immutable usage event.

    Args:
        meter_id: Meter the event belongs to
        subscriber_id: Customer who consumed the usage
        value: Non-negative integer units
        properties: Typed properties map (see UsageProperties)
        timestamp: When the usage happened (defaults to ingestion time)
        event_id: Client idempotency key; a replay returns the stored event

    Returns:
        AppendResult with duplicate=True when event_id was already recorded
    """
    if not subscriber_id:
        raise ValidationError("subscriber_id is required")
    value = validate_event_value(value)
    stored_properties = normalize_properties(properties)
    created_at = normalize_now(now)
    occurred_at = ensure_utc(timestamp) if timestamp else created_at

    if event_id:
        existing = get_usage_event(event_id)
        if existing:
            return AppendResult(event=existing, duplicate=True)
    event_id = event_id or str(uuid4())

    try:
        with get_db_session() as session:
            session.execute(
                insert(usage_events).values(
                    id=event_id,
                    meter_id=meter_id,
                    subscriber_id=subscriber_id,
                    event_value=value,
                    properties=stored_properties,
                    occurred_at=occurred_at,
                    created_at=created_at,
                )
            )
    except IntegrityError:
        # Same event_id inserted concurrently
        existing = get_usage_event(event_id)
        if existing is None:
            raise
        return AppendResult(event=existing, duplicate=True)

    usage_events_appended_total.inc({"aggregation": aggregation})
    logger.debug(
        "usage.appended",
        extra={"meter_id": meter_id, "customer_id": subscriber_id, "outcome": str(value)},
    )
    return AppendResult(
        event=UsageEvent(
            id=event_id,
            meter_id=meter_id,
            subscriber_id=subscriber_id,
            event_value=value,
            properties=stored_properties,
            timestamp=occurred_at,
            created_at=created_at,
        )
    )


def get_usage_events(
    meter_id: str,
    subscriber_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[UsageEvent]:
    """
    Ledger events for a meter, oldest first.

    Args:
        subscriber_id: Optional filter by customer
        start: Window start (inclusive)
        end: Window end (exclusive)
    """
    stmt = select(usage_events).where(usage_events.c.meter_id == meter_id)
    if subscriber_id:
        stmt = stmt.where(usage_events.c.subscriber_id == subscriber_id)
    if start:
        stmt = stmt.where(usage_events.c.occurred_at >= ensure_utc(start))
    if end:
        stmt = stmt.where(usage_events.c.occurred_at < ensure_utc(end))
    stmt = stmt.order_by(usage_events.c.occurred_at, usage_events.c.created_at, usage_events.c.id)
    if limit:
        stmt = stmt.limit(limit)

    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [_row_to_event(row) for row in rows]


def reduce_values(
    aggregation_type,
    events: Iterable,
    unique_property: str = "resource_id",
) -> int:
    """
    Reduce ledger events to a scalar.

    Pure function of its inputs. Each event exposes `event_value` and
    `properties`.

    - count: number of events
    - sum, duration: total of event values
    - unique: distinct values of properties[unique_property] (events lacking it are ignored)
    - max: largest event value (0 for an empty window)
    """
    kind = AggregationType(aggregation_type)

    if kind == AggregationType.COUNT:
        return sum(1 for _ in events)
    if kind in (AggregationType.SUM, AggregationType.DURATION):
        return sum(int(event.event_value) for event in events)
    if kind == AggregationType.MAX:
        return max((int(event.event_value) for event in events), default=0)

    seen = set()
    for event in events:
        value = (event.properties or {}).get(unique_property)
        if value is not None:
            seen.add(value)
    return len(seen)


def _window_rows(meter_id: str, subscriber_id: Optional[str], start: datetime, end: datetime):
    stmt = (
        select(usage_events.c.event_value, usage_events.c.properties)
        .where(usage_events.c.meter_id == meter_id)
        .where(usage_events.c.occurred_at >= ensure_utc(start))
        .where(usage_events.c.occurred_at < ensure_utc(end))
    )
    if subscriber_id:
        stmt = stmt.where(usage_events.c.subscriber_id == subscriber_id)
    with get_db_session() as session:
        return session.execute(stmt).fetchall()


def aggregate(
    meter_id: str,
    subscriber_id: Optional[str],
    start: datetime,
    end: datetime,
    aggregation_type,
    unique_property: str = "resource_id",
) -> int:
    """
    Aggregate a meter over [start, end) from the ledger alone.

    subscriber_id=None aggregates across all subscribers (creator-wide rollups).
    """
    rows = _window_rows(meter_id, subscriber_id, start, end)
    return reduce_values(aggregation_type, rows, unique_property)


def has_property_value(
    meter_id: str,
    subscriber_id: str,
    start: datetime,
    end: datetime,
    key: str,
    value: Any,
) -> bool:
    """True if an event in the window already carries properties[key] == value."""
    for row in _window_rows(meter_id, subscriber_id, start, end):
        if (row.properties or {}).get(key) == value:
            return True
    return False
