"""
Tier analytics API (read-only dashboards). Scoped by the X-Creator-Id header.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from tierline.core.admin_auth import require_creator
from tierline.core.errors import NotFoundError
from tierline.features.analytics.service import calculate_tier_analytics, get_tier_analytics_snapshot
from tierline.models.analytics import Granularity, TierAnalyticsSnapshot

router = APIRouter(prefix="/v1/analytics", tags=["analytics"])


@router.get("/tiers", response_model=TierAnalyticsSnapshot)
def tier_analytics(
    period_start: datetime = Query(...),
    period_end: datetime = Query(...),
    granularity: Granularity = Query(Granularity.DAILY),
    cached: bool = Query(False, description="Serve the stored snapshot instead of recomputing"),
    creator_id: str = Depends(require_creator),
):
    if cached:
        snapshot = get_tier_analytics_snapshot(creator_id, period_start, period_end, granularity.value)
        if snapshot is None:
            raise NotFoundError("No analytics snapshot for this period")
        return snapshot
    return calculate_tier_analytics(creator_id, period_start, period_end, granularity.value)
