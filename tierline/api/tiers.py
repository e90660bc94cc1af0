"""
Tier admin API and the subscription lifecycle hook.

Tier routes are scoped by the X-Creator-Id header. /v1/assignments/status is
called by the payment collaborator when a subscription changes state.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from tierline.core.admin_auth import require_creator
from tierline.features.tiers.service import (
    apply_subscription_status,
    assign_customer_to_tier,
    create_tier,
    delete_tier,
    list_tiers,
    update_tier,
)
from tierline.models.tier import AssignmentStatus, CustomerTierAssignment, SubscriptionTier, TierInput, TierUpdate


router = APIRouter(tags=["tiers"])


class AssignmentRequest(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=100)


class SubscriptionStatusRequest(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=100)
    status: AssignmentStatus
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@router.post("/v1/tiers", response_model=SubscriptionTier, status_code=201)
def create(body: TierInput, creator_id: str = Depends(require_creator)):
    return create_tier(creator_id, body)


@router.get("/v1/tiers", response_model=List[SubscriptionTier])
def list_all(include_inactive: bool = Query(False), creator_id: str = Depends(require_creator)):
    return list_tiers(creator_id, include_inactive=include_inactive)


@router.patch("/v1/tiers/{tier_id}", response_model=SubscriptionTier)
def patch(tier_id: str, body: TierUpdate, creator_id: str = Depends(require_creator)):
    return update_tier(tier_id, creator_id, body)


@router.delete("/v1/tiers/{tier_id}", status_code=204)
def remove(tier_id: str, creator_id: str = Depends(require_creator)):
    delete_tier(tier_id, creator_id)
    return Response(status_code=204)


@router.post("/v1/tiers/{tier_id}/assignments", response_model=CustomerTierAssignment, status_code=201)
def assign(tier_id: str, body: AssignmentRequest, creator_id: str = Depends(require_creator)):
    return assign_customer_to_tier(body.customer_id, creator_id, tier_id)


@router.post("/v1/assignments/status", response_model=CustomerTierAssignment)
def subscription_status(body: SubscriptionStatusRequest, creator_id: str = Depends(require_creator)):
    return apply_subscription_status(
        body.customer_id,
        creator_id,
        body.status.value,
        period_start=body.period_start,
        period_end=body.period_end,
    )
