"""
tierline/models/usage_event.py

Usage ledger models.

Usage events are immutable facts. Properties are a typed map: well-known
keys are declared fields, anything else rides in the extension bag and must
be a JSON scalar.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

Scalar = Union[str, int, float, bool, None]


class UsageProperties(BaseModel):
    """
    Event properties.

    Well-known keys:
    - resource_id: identity counted by `unique` aggregation (accepts resourceId)

    Extension keys must be strings mapping to scalar values.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    resource_id: Optional[str] = Field(None, alias="resourceId", max_length=255)

    @model_validator(mode="after")
    def _scalar_extensions(self):
        for key, value in (self.model_extra or {}).items():
            if not isinstance(value, (str, int, float, bool)) and value is not None:
                raise ValueError(f"property {key!r} must be a scalar value")
        return self

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UsageEvent(BaseModel):
    """
    An appended ledger row.

    event_value is an integer count of units (seconds or milliseconds for
    duration meters).
    """
    model_config = ConfigDict(frozen=True)

    id: str
    meter_id: str
    subscriber_id: str
    event_value: int
    properties: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    created_at: datetime


class AppendResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: UsageEvent
    duplicate: bool = False


class TrackRequest(BaseModel):
    """Ingestion payload. `meter` accepts a meter event name or id."""
    meter: str = Field(..., min_length=1, max_length=200, alias="meterOrEventName")
    subscriber_id: str = Field(..., min_length=1, max_length=100, alias="subscriberId")
    value: Optional[int] = Field(None, ge=0)
    properties: Optional[Dict[str, Scalar]] = None
    timestamp: Optional[datetime] = None
    event_id: Optional[str] = Field(None, max_length=100, alias="eventId")

    model_config = ConfigDict(populate_by_name=True)


class TrackResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    allowed: bool = True
    warning: bool = False
    overage: bool = False
    duplicate: bool = False
    limit: Optional[int] = None
    remaining: Optional[int] = None
    current_usage: Optional[int] = None
