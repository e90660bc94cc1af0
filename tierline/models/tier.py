"""
tierline/models/tier.py

Subscription tier models.

Tiers are priced bundles of feature entitlements and usage caps. Prices are
integer minor currency units.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class BillingCycle(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


# Statuses that make an assignment the customer's current one
ACTIVE_STATUSES = (AssignmentStatus.ACTIVE.value, AssignmentStatus.TRIALING.value, AssignmentStatus.PAST_DUE.value)


class SubscriptionTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    creator_id: str
    name: str
    description: Optional[str] = None
    price: int
    currency: str = "usd"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    feature_entitlements: List[str] = Field(default_factory=list)
    usage_caps: Dict[str, int] = Field(default_factory=dict)
    is_default: bool = False
    active: bool = True
    trial_period_days: int = 0
    sort_order: int = 0
    created_at: datetime
    updated_at: datetime


class CustomerTierAssignment(BaseModel):
    """
    Links a customer to a creator's tier.

    Constraint: at most one assignment in ACTIVE_STATUSES per
    (customer_id, creator_id).
    """
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    creator_id: str
    tier_id: str
    status: AssignmentStatus
    period_start: datetime
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


class MeterUsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_name: str
    current_usage: int
    limit_value: Optional[int] = None
    usage_fraction: Optional[float] = None
    overage_quantity: int = 0
    hard_cap: bool = False


class CustomerTierInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    assignment: CustomerTierAssignment
    entitlements: List[str]
    usage_caps: Dict[str, int]
    usage_summary: Dict[str, MeterUsageSummary] = Field(default_factory=dict)
    next_billing_date: Optional[datetime] = None


class RelievedMeter(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_name: str
    current_usage: int
    current_limit: Optional[int]
    new_limit: Optional[int]
    state: str  # exceeded | near_limit


class TierUpgradeOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    price_difference: int
    relieves: List[RelievedMeter] = Field(default_factory=list)
    recommended: bool = False


class TierInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    price: int = Field(..., ge=0)
    currency: str = Field("usd", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    feature_entitlements: List[str] = Field(default_factory=list)
    usage_caps: Dict[str, int] = Field(default_factory=dict)
    is_default: bool = False
    active: bool = True
    trial_period_days: int = Field(0, ge=0)
    sort_order: int = 0


class TierUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    billing_cycle: Optional[BillingCycle] = None
    feature_entitlements: Optional[List[str]] = None
    usage_caps: Optional[Dict[str, int]] = None
    is_default: Optional[bool] = None
    active: Optional[bool] = None
    trial_period_days: Optional[int] = Field(None, ge=0)
    sort_order: Optional[int] = None
