"""
Meter registry admin API. Scoped by the X-Creator-Id header.
"""

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tierline.core.admin_auth import require_creator
from tierline.features.meters.service import create_meter, delete_meter, get_meters, update_plan_limits
from tierline.models.meter import Meter, MeterDefinition, PlanLimitInput

router = APIRouter(prefix="/v1/meters", tags=["meters"])


class PlanLimitsUpdate(BaseModel):
    limits: List[PlanLimitInput] = Field(default_factory=list)
    allow_migration: bool = Field(False, description="Allow dropping limits that active tiers still use")


@router.post("", response_model=Meter, status_code=201)
def create(body: MeterDefinition, creator_id: str = Depends(require_creator)):
    return create_meter(creator_id, body)


@router.get("", response_model=List[Meter])
def list_meters(creator_id: str = Depends(require_creator)):
    """All meters, soft-deleted ones flagged with active=false."""
    return get_meters(creator_id)


@router.put("/{meter_id}/limits", response_model=Meter)
def replace_limits(meter_id: str, body: PlanLimitsUpdate, creator_id: str = Depends(require_creator)):
    return update_plan_limits(meter_id, creator_id, body.limits, allow_migration=body.allow_migration)


@router.delete("/{meter_id}", response_model=Meter)
def remove(meter_id: str, creator_id: str = Depends(require_creator)):
    return delete_meter(meter_id, creator_id)
