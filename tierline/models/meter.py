"""
tierline/models/meter.py

Meter registry models.

A meter is a creator-defined measurable event type. Its plan limits say how
much of it each tier may consume and what happens beyond that.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class AggregationType(str, Enum):
    COUNT = "count"
    SUM = "sum"
    UNIQUE = "unique"
    DURATION = "duration"
    MAX = "max"


class BillingModel(str, Enum):
    METERED = "metered"
    LICENSED = "licensed"
    HYBRID = "hybrid"


BILLABLE_MODELS = frozenset({BillingModel.METERED, BillingModel.HYBRID})


class PlanLimit(BaseModel):
    """
    Consumption limit for one plan on one meter.

    - limit_value: None means unlimited
    - overage_price: minor currency units per unit beyond the limit
    - soft_limit_threshold: fraction of the limit that triggers a warning
    - hard_cap: True denies usage beyond the limit, False bills it as overage
    """
    model_config = ConfigDict(frozen=True)

    plan_name: str
    limit_value: Optional[int] = None
    overage_price: int = 0
    soft_limit_threshold: float = 0.8
    hard_cap: bool = False


class Meter(BaseModel):
    """A measurable event type, identified by (creator_id, event_name)."""
    model_config = ConfigDict(frozen=True)

    id: str
    creator_id: str
    event_name: str
    display_name: str
    description: Optional[str] = None
    aggregation_type: AggregationType
    unit_name: str
    billing_model: BillingModel
    unique_property: str = "resource_id"
    active: bool = True
    deleted_at: Optional[datetime] = None
    plan_limits: List[PlanLimit] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def limit_for_plan(self, plan_name: str) -> Optional[PlanLimit]:
        wanted = plan_name.strip().lower()
        for limit in self.plan_limits:
            if limit.plan_name.strip().lower() == wanted:
                return limit
        return None


class PlanLimitInput(BaseModel):
    plan_name: str = Field(..., min_length=1, max_length=200)
    limit_value: Optional[int] = Field(None, ge=0)
    overage_price: int = Field(0, ge=0)
    soft_limit_threshold: Optional[float] = None
    hard_cap: bool = False


class MeterDefinition(BaseModel):
    """Creator-supplied meter definition. Enum fields are validated by the registry."""
    event_name: str = Field(..., min_length=1, max_length=200)
    display_name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    aggregation_type: str = "count"
    unit_name: str = "units"
    billing_model: str = "metered"
    unique_property: str = "resource_id"
    plan_limits: List[PlanLimitInput] = Field(default_factory=list)
