"""
tierline/features/analytics/service.py

Tier analytics rollups.

Reads the ledger through the same reduce_values primitive billing uses, so a
dashboard total and a billed quantity can never disagree on how usage is
counted. Snapshots are cached copies; recomputing overwrites them.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import insert, select, update

from tierline.core.clock import add_months, ensure_utc, month_start, normalize_now
from tierline.core.database import get_db_session, tier_analytics_snapshots
from tierline.core.errors import ValidationError
from tierline.features.meters.service import get_meters
from tierline.features.tiers.service import list_active_assignments, list_tiers
from tierline.features.usage.service import get_usage_events, reduce_values
from tierline.models.analytics import AnalyticsBucket, Granularity, TierAnalyticsSnapshot

logger = logging.getLogger("tierline.analytics")

MAX_BUCKETS = 1000


def _next_bucket(value: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.DAILY:
        return value + timedelta(days=1)
    return add_months(value, 1)


def _bucket_bounds(start: datetime, end: datetime, granularity: Granularity) -> List[Tuple[datetime, datetime]]:
    bounds = []
    if granularity == Granularity.DAILY:
        cursor = start.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        cursor = month_start(start)

    while cursor < end:
        nxt = _next_bucket(cursor, granularity)
        bounds.append((max(cursor, start), min(nxt, end)))
        cursor = nxt
        if len(bounds) > MAX_BUCKETS:
            raise ValidationError(f"Period spans more than {MAX_BUCKETS} {granularity.value} buckets")
    return bounds


def calculate_tier_analytics(
    creator_id: str,
    period_start: datetime,
    period_end: datetime,
    granularity: str = "daily",
    now: Optional[datetime] = None,
) -> TierAnalyticsSnapshot:
    """
    Roll up a creator's usage into daily or monthly buckets.

    Args:
        period_start: Inclusive window start
        period_end: Exclusive window end
        granularity: "daily" or "monthly"

    Returns:
        TierAnalyticsSnapshot (also persisted for later reads)
    """
    try:
        grain = Granularity(granularity)
    except ValueError as exc:
        raise ValidationError(f"granularity must be daily or monthly, got {granularity!r}") from exc
    start = ensure_utc(period_start)
    end = ensure_utc(period_end)
    if end <= start:
        raise ValidationError("period_end must be after period_start")
    now_dt = normalize_now(now)

    bounds = _bucket_bounds(start, end, grain)
    bucket_totals: List[Dict[str, int]] = [{} for _ in bounds]
    per_meter_totals: Dict[str, int] = {}

    for meter in sorted(get_meters(creator_id), key=lambda m: m.event_name):
        events = get_usage_events(meter.id, None, start, end)
        per_meter_totals[meter.event_name] = reduce_values(meter.aggregation_type, events, meter.unique_property)
        for index, (bucket_start, bucket_end) in enumerate(bounds):
            in_bucket = [e for e in events if bucket_start <= e.timestamp < bucket_end]
            bucket_totals[index][meter.event_name] = reduce_values(
                meter.aggregation_type, in_bucket, meter.unique_property
            )

    tier_names = {tier.id: tier.name for tier in list_tiers(creator_id, include_inactive=True)}
    subscriber_counts: Dict[str, int] = {}
    for assignment in list_active_assignments(creator_id, start, end):
        name = tier_names.get(assignment.tier_id, assignment.tier_id)
        subscriber_counts[name] = subscriber_counts.get(name, 0) + 1

    snapshot = TierAnalyticsSnapshot(
        creator_id=creator_id,
        period_start=start,
        period_end=end,
        granularity=grain,
        buckets=[
            AnalyticsBucket(bucket_start=b_start, bucket_end=b_end, meter_totals=totals)
            for (b_start, b_end), totals in zip(bounds, bucket_totals)
        ],
        per_meter_totals=per_meter_totals,
        per_tier_subscriber_counts=dict(sorted(subscriber_counts.items())),
        computed_at=now_dt,
    )
    _store_snapshot(snapshot)
    logger.info(
        "analytics.snapshot.computed",
        extra={"creator_id": creator_id, "outcome": f"{len(bounds)} {grain.value} buckets"},
    )
    return snapshot


def _store_snapshot(snapshot: TierAnalyticsSnapshot) -> None:
    payload = snapshot.model_dump(mode="json")
    with get_db_session() as session:
        existing = session.execute(
            select(tier_analytics_snapshots.c.id)
            .where(tier_analytics_snapshots.c.creator_id == snapshot.creator_id)
            .where(tier_analytics_snapshots.c.period_start == snapshot.period_start)
            .where(tier_analytics_snapshots.c.period_end == snapshot.period_end)
            .where(tier_analytics_snapshots.c.granularity == snapshot.granularity.value)
        ).first()
        if existing:
            session.execute(
                update(tier_analytics_snapshots)
                .where(tier_analytics_snapshots.c.id == existing.id)
                .values(payload=payload, computed_at=snapshot.computed_at)
            )
        else:
            session.execute(
                insert(tier_analytics_snapshots).values(
                    creator_id=snapshot.creator_id,
                    period_start=snapshot.period_start,
                    period_end=snapshot.period_end,
                    granularity=snapshot.granularity.value,
                    payload=payload,
                    computed_at=snapshot.computed_at,
                )
            )


def get_tier_analytics_snapshot(
    creator_id: str,
    period_start: datetime,
    period_end: datetime,
    granularity: str = "daily",
) -> Optional[TierAnalyticsSnapshot]:
    with get_db_session() as session:
        row = session.execute(
            select(tier_analytics_snapshots.c.payload)
            .where(tier_analytics_snapshots.c.creator_id == creator_id)
            .where(tier_analytics_snapshots.c.period_start == ensure_utc(period_start))
            .where(tier_analytics_snapshots.c.period_end == ensure_utc(period_end))
            .where(tier_analytics_snapshots.c.granularity == granularity)
        ).first()
    if not row:
        return None
    return TierAnalyticsSnapshot.model_validate(row.payload)
