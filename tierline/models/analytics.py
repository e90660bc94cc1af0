"""
tierline/models/analytics.py
Analytics read models: time-bucketed meter totals and tier subscriber counts.
Always reconstructible from the usage ledger and tier assignments.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List
from pydantic import BaseModel, ConfigDict, Field


class Granularity(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class AnalyticsBucket(BaseModel):
    """Meter totals for one [bucket_start, bucket_end) window."""

    model_config = ConfigDict(frozen=True)

    bucket_start: datetime
    bucket_end: datetime
    meter_totals: Dict[str, int] = Field(default_factory=dict, description="event_name -> aggregated usage")


class TierAnalyticsSnapshot(BaseModel):
    """Rollup for a creator over [period_start, period_end)."""

    model_config = ConfigDict(frozen=True)

    creator_id: str
    period_start: datetime
    period_end: datetime
    granularity: Granularity
    buckets: List[AnalyticsBucket] = Field(default_factory=list)
    per_meter_totals: Dict[str, int] = Field(default_factory=dict, description="Period-wide aggregate per meter")
    per_tier_subscriber_counts: Dict[str, int] = Field(default_factory=dict, description="tier name -> subscribers")
    computed_at: datetime
