"""
tierline/models/enforcement.py

Enforcement decision returned to callers of the pre-check.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class EnforcementOutcome(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    OVERAGE = "overage"
    DENY = "deny"


class EnforcementDecision(BaseModel):
    """
    Allow/deny verdict for a prospective usage increment.

    - remaining: units left under the limit before this increment (None when unlimited)
    - warning: projected usage reached the soft threshold (non-blocking)
    - overage: projected usage passes a non-hard limit; the excess is billed
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    outcome: EnforcementOutcome
    reason: Optional[str] = None
    warning: bool = False
    overage: bool = False
    unlimited: bool = False
    meter_id: str
    event_name: str
    tier_id: Optional[str] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    current_usage: int = 0
    requested: int = 0
    soft_limit_threshold: Optional[float] = None
    hard_cap: bool = False
    period_start: datetime
