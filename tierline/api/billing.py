"""
Billing trigger API.
Requires X-Admin-Key header for all endpoints.
Invoked by the scheduler or an admin action; the returned BillingCycleResult
is what the payment collaborator charges.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tierline.core.admin_auth import AdminActor, require_admin
from tierline.core.clock import format_billing_period, parse_billing_period
from tierline.core.errors import NotFoundError
from tierline.features.billing.service import (
    get_billing_cycle_result,
    process_billing_cycle,
    resolve_closed_period,
)
from tierline.features.billing.warnings import send_usage_warnings
from tierline.models.billing import BillingCycleResult, UsageWarning
from tierline.queue_client import enqueue_billing_cycle

logger = logging.getLogger("tierline.api.billing")

router = APIRouter(prefix="/v1/billing", tags=["billing"])


class BillingRunRequest(BaseModel):
    creator_id: str = Field(..., min_length=1, max_length=100)
    billing_period: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="YYYY-MM")
    enqueue: bool = Field(False, description="Queue the run on RQ instead of running inline")


class BillingRunQueued(BaseModel):
    job_id: str
    creator_id: str
    billing_period: str
    queued: bool = True


class WarningScanRequest(BaseModel):
    creator_id: str = Field(..., min_length=1, max_length=100)


class WarningScanResponse(BaseModel):
    sent: int
    warnings: List[UsageWarning]


@router.post("/process")
def process(body: BillingRunRequest, actor: AdminActor = Depends(require_admin)):
    billing_period, _, _ = resolve_closed_period(body.billing_period)
    logger.info(
        "billing.trigger",
        extra={"creator_id": body.creator_id, "billing_period": billing_period, "outcome": actor.actor_id},
    )
    if body.enqueue:
        job_id = enqueue_billing_cycle(body.creator_id, billing_period)
        return BillingRunQueued(job_id=job_id, creator_id=body.creator_id, billing_period=billing_period)
    return process_billing_cycle(body.creator_id, billing_period)


@router.get("/results/{creator_id}/{billing_period}", response_model=BillingCycleResult)
def get_result(creator_id: str, billing_period: str, actor: AdminActor = Depends(require_admin)):
    start, _ = parse_billing_period(billing_period)
    billing_period = format_billing_period(start)
    result = get_billing_cycle_result(creator_id, billing_period)
    if result is None:
        raise NotFoundError(f"No billing result for {creator_id} {billing_period}")
    return result


@router.post("/warnings", response_model=WarningScanResponse)
def scan_warnings(body: WarningScanRequest, actor: AdminActor = Depends(require_admin)):
    warnings = send_usage_warnings(body.creator_id)
    return WarningScanResponse(sent=len(warnings), warnings=warnings)
