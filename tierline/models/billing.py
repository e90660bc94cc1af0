"""
tierline/models/billing.py

Billing cycle models.

A BillingCycleResult is the engine's output for one (creator, period). The
payment collaborator turns total_overage_amount into charges; nothing here
moves money. All amounts are integer minor currency units.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class BillingRunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    PARTIAL = "partial"
    FINALIZED = "finalized"


class OverageLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer_id: str
    tier_id: str
    meter_id: str
    event_name: str
    usage_quantity: int
    limit_value: Optional[int]
    overage_quantity: int
    overage_price: int
    overage_amount: int
    currency: str


class CustomerFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer_id: str
    error: str
    attempts: int


class BillingCycleResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    creator_id: str
    billing_period: str  # YYYY-MM
    status: BillingRunStatus
    per_meter_usage: Dict[str, int] = Field(default_factory=dict)
    overage_line_items: List[OverageLineItem] = Field(default_factory=list)
    total_overage_amount: int = 0
    customers_processed: int = 0
    failed_customers: List[CustomerFailure] = Field(default_factory=list)
    processed_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    @property
    def finalized(self) -> bool:
        return self.status == BillingRunStatus.FINALIZED


class UsageWarning(BaseModel):
    """Payload handed to the notification collaborator."""
    model_config = ConfigDict(frozen=True)

    creator_id: str
    customer_id: str
    meter_name: str
    usage_fraction: float
    current_usage: int
    limit_value: int
