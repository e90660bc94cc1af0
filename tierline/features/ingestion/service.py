"""
tierline/features/ingestion/service.py

Usage ingestion: enforcement pre-check, then ledger append.

Denials are returned to the caller as LimitExceededError and nothing is
written. Replayed event ids short-circuit before enforcement so a client
retry never double counts or gets a spurious denial.
"""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from tierline.core.clock import normalize_now
from tierline.core.errors import LimitExceededError, ValidationError
from tierline.features.enforcement.service import (
    current_usage,
    evaluate,
    record_decision,
    resolve_context,
)
from tierline.features.usage.service import (
    append_usage_event,
    get_usage_event,
    has_property_value,
    normalize_properties,
    validate_event_value,
)
from tierline.models.meter import AggregationType
from tierline.models.usage_event import TrackResult

logger = logging.getLogger("tierline.ingestion")


def usage_increment(
    aggregation_type: AggregationType,
    value: int,
    usage: int,
    *,
    unseen: bool = True,
) -> int:
    """
    How much an event would move the aggregated usage.

    - count: 1
    - sum, duration: the event value
    - unique: 1 for a property value not yet seen this period, else 0
    - max: how far the value raises the current maximum
    """
    if aggregation_type == AggregationType.COUNT:
        return 1
    if aggregation_type in (AggregationType.SUM, AggregationType.DURATION):
        return value
    if aggregation_type == AggregationType.MAX:
        return max(0, value - usage)
    return 1 if unseen else 0


def track_usage(
    creator_id: str,
    meter_or_event_name: str,
    subscriber_id: str,
    value: Optional[int] = None,
    properties: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
    event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrackResult:
    """
    Record usage for a subscriber if enforcement allows it.

    Raises:
        NotFoundError: unknown or deleted meter
        ValidationError: bad value or properties
        LimitExceededError: hard cap would be exceeded
    """
    if not creator_id:
        raise ValidationError("creator_id is required")
    if not subscriber_id:
        raise ValidationError("subscriber_id is required")

    if event_id:
        existing = get_usage_event(event_id)
        if existing:
            logger.info(
                "usage.duplicate",
                extra={"creator_id": creator_id, "customer_id": subscriber_id, "meter_id": existing.meter_id},
            )
            return TrackResult(event_id=existing.id, duplicate=True)

    value = validate_event_value(1 if value is None else value)
    stored_properties = normalize_properties(properties)
    now_dt = normalize_now(now)

    context = resolve_context(subscriber_id, creator_id, meter_or_event_name)
    meter = context.meter
    usage = current_usage(context, subscriber_id, now_dt)

    unseen = True
    if meter.aggregation_type == AggregationType.UNIQUE:
        key_value = stored_properties.get(meter.unique_property)
        if key_value is None:
            unseen = False
        else:
            start, end = context.window(now_dt)
            unseen = not has_property_value(meter.id, subscriber_id, start, end, meter.unique_property, key_value)
    increment = usage_increment(meter.aggregation_type, value, usage, unseen=unseen)

    decision = evaluate(context, usage, increment, now_dt)
    record_decision(decision, subscriber_id, creator_id)
    if not decision.allowed:
        raise LimitExceededError(
            f"Usage limit exceeded for meter {meter.event_name!r}",
            reason=decision.reason,
            limit=decision.limit,
            remaining=decision.remaining,
            current_usage=decision.current_usage,
        )

    appended = append_usage_event(
        meter.id,
        subscriber_id,
        value,
        stored_properties,
        timestamp=timestamp,
        event_id=event_id,
        aggregation=meter.aggregation_type.value,
        now=now_dt,
    )
    return TrackResult(
        event_id=appended.event.id,
        allowed=True,
        warning=decision.warning,
        overage=decision.overage,
        duplicate=appended.duplicate,
        limit=decision.limit,
        remaining=decision.remaining,
        current_usage=usage,
    )
