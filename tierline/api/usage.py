"""
Usage API: ingestion, ledger queries, tier info and enforcement dry-runs.

Ingestion and dry-run checks are scoped by the X-Creator-Id header.
Tier info and upgrade options take customerId and creatorId as query params.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from tierline.core.admin_auth import require_creator
from tierline.core.clock import ensure_utc, month_start, normalize_now, through
from tierline.core.errors import NotFoundError
from tierline.features.enforcement.service import check_enforcement
from tierline.features.ingestion.service import track_usage
from tierline.features.meters.service import get_meter, get_meter_by_event
from tierline.features.tiers.service import get_customer_tier_info, get_tier_upgrade_options
from tierline.features.usage.service import aggregate, get_usage_events
from tierline.models.enforcement import EnforcementDecision
from tierline.models.meter import Meter
from tierline.models.tier import CustomerTierInfo, TierUpgradeOption
from tierline.models.usage_event import TrackRequest, TrackResult, UsageEvent

router = APIRouter(prefix="/v1/usage", tags=["usage"])


def _meter_for_history(creator_id: str, meter: str) -> Meter:
    """Meter by event name or id, soft-deleted ones included."""
    found = get_meter_by_event(creator_id, meter, include_deleted=True)
    if found:
        return found
    try:
        return get_meter(meter, creator_id)
    except NotFoundError:
        raise NotFoundError(f"Meter {meter!r} not found") from None


@router.post("/track", response_model=TrackResult)
def track(body: TrackRequest, creator_id: str = Depends(require_creator)):
    """Record usage. A hard-cap denial renders as HTTP 429 with allowed=false."""
    return track_usage(
        creator_id,
        body.meter,
        body.subscriber_id,
        value=body.value,
        properties=body.properties,
        timestamp=body.timestamp,
        event_id=body.event_id,
    )


@router.get("/events", response_model=List[UsageEvent])
def list_events(
    meter: str = Query(..., min_length=1),
    subscriber_id: Optional[str] = Query(None, alias="subscriberId"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    creator_id: str = Depends(require_creator),
):
    found = _meter_for_history(creator_id, meter)
    return get_usage_events(found.id, subscriber_id, start, end, limit=limit)


@router.get("/aggregate")
def aggregate_usage(
    meter: str = Query(..., min_length=1),
    subscriber_id: Optional[str] = Query(None, alias="subscriberId"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    creator_id: str = Depends(require_creator),
):
    """Aggregate over [start, end). Defaults to the current calendar month so far."""
    found = _meter_for_history(creator_id, meter)
    now = normalize_now(None)
    window_start = ensure_utc(start) if start else month_start(now)
    window_end = ensure_utc(end) if end else through(now)
    value = aggregate(
        found.id, subscriber_id, window_start, window_end, found.aggregation_type, found.unique_property
    )
    return {
        "meter_id": found.id,
        "event_name": found.event_name,
        "aggregation_type": found.aggregation_type.value,
        "subscriber_id": subscriber_id,
        "start": window_start.isoformat(),
        "end": window_end.isoformat(),
        "value": value,
    }


@router.get("/tier-info", response_model=Optional[CustomerTierInfo])
def tier_info(
    customer_id: str = Query(..., alias="customerId", min_length=1),
    creator_id: str = Query(..., alias="creatorId", min_length=1),
):
    """Tier snapshot, or null when the customer has no active assignment."""
    return get_customer_tier_info(customer_id, creator_id)


@router.get("/upgrade-options", response_model=List[TierUpgradeOption])
def upgrade_options(
    customer_id: str = Query(..., alias="customerId", min_length=1),
    creator_id: str = Query(..., alias="creatorId", min_length=1),
):
    return get_tier_upgrade_options(customer_id, creator_id)


@router.get("/enforcement", response_model=EnforcementDecision)
def enforcement_check(
    customer_id: str = Query(..., alias="customerId", min_length=1),
    meter: str = Query(..., min_length=1),
    increment: int = Query(1, ge=0),
    creator_id: str = Depends(require_creator),
):
    """Dry-run enforcement check. Nothing is recorded."""
    return check_enforcement(customer_id, creator_id, meter, increment)
