"""
tierline/features/enforcement/service.py

Real-time allow/deny decisions for prospective usage.

The check and the ledger append are separate steps. Concurrent calls for the
same customer and meter can each pass the check before either append lands,
so a hard cap may be overshot briefly under bursty load. Writes are never
serialized through a lock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tierline.core.clock import normalize_now
from tierline.core.errors import ValidationError
from tierline.core.metrics import enforcement_decisions_total
from tierline.features.enforcement.cache import limit_cache
from tierline.features.meters.service import resolve_meter
from tierline.features.tiers.service import (
    current_window,
    get_active_assignment,
    get_default_tier,
    get_tier,
    resolve_plan_limit,
    threshold_reached,
)
from tierline.features.usage.service import aggregate
from tierline.models.enforcement import EnforcementDecision, EnforcementOutcome
from tierline.models.meter import Meter, PlanLimit
from tierline.models.tier import CustomerTierAssignment, SubscriptionTier

logger = logging.getLogger("tierline.enforcement")

LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


@dataclass(frozen=True)
class EnforcementContext:
    meter: Meter
    tier: Optional[SubscriptionTier]
    assignment: Optional[CustomerTierAssignment]
    limit: Optional[PlanLimit]

    def window(self, now: datetime):
        return current_window(self.assignment, now)


def _load_context(customer_id: str, creator_id: str, meter_name: str) -> EnforcementContext:
    meter = resolve_meter(creator_id, meter_name)
    assignment = get_active_assignment(customer_id, creator_id)
    if assignment is not None:
        tier = get_tier(assignment.tier_id, creator_id)
    else:
        tier = get_default_tier(creator_id)
    return EnforcementContext(
        meter=meter,
        tier=tier,
        assignment=assignment,
        limit=resolve_plan_limit(meter, tier),
    )


def resolve_context(customer_id: str, creator_id: str, meter_name: str) -> EnforcementContext:
    """Meter, tier and limit for a customer, served from the limit cache when fresh."""
    key = ("context", creator_id, customer_id, meter_name)
    return limit_cache.get_or_load(key, lambda: _load_context(customer_id, creator_id, meter_name))


def current_usage(context: EnforcementContext, customer_id: str, now: datetime) -> int:
    start, end = context.window(now)
    meter = context.meter
    return aggregate(meter.id, customer_id, start, end, meter.aggregation_type, meter.unique_property)


def evaluate(
    context: EnforcementContext,
    usage: int,
    increment: int,
    now: datetime,
) -> EnforcementDecision:
    """
    Pure decision for `usage + increment` against the context's limit.

    Monotone in `increment`: if N is allowed, anything below N is too.
    """
    meter = context.meter
    limit = context.limit
    period_start = context.window(now)[0]
    base = {
        "meter_id": meter.id,
        "event_name": meter.event_name,
        "tier_id": context.tier.id if context.tier else None,
        "current_usage": usage,
        "requested": increment,
        "period_start": period_start,
    }

    if limit is None or limit.limit_value is None:
        return EnforcementDecision(allowed=True, outcome=EnforcementOutcome.ALLOW, unlimited=True, **base)

    projected = usage + increment
    remaining = max(0, limit.limit_value - usage)
    base.update(
        {
            "limit": limit.limit_value,
            "remaining": remaining,
            "soft_limit_threshold": limit.soft_limit_threshold,
            "hard_cap": limit.hard_cap,
        }
    )

    if projected <= limit.limit_value:
        warning = threshold_reached(projected, limit)
        outcome = EnforcementOutcome.WARN if warning else EnforcementOutcome.ALLOW
        return EnforcementDecision(allowed=True, outcome=outcome, warning=warning, **base)

    if limit.hard_cap:
        return EnforcementDecision(
            allowed=False, outcome=EnforcementOutcome.DENY, reason=LIMIT_EXCEEDED, warning=True, **base
        )

    return EnforcementDecision(
        allowed=True, outcome=EnforcementOutcome.OVERAGE, warning=True, overage=True, **base
    )


def record_decision(decision: EnforcementDecision, customer_id: str, creator_id: str) -> None:
    enforcement_decisions_total.inc({"outcome": decision.outcome.value})
    extra = {
        "creator_id": creator_id,
        "customer_id": customer_id,
        "meter_id": decision.meter_id,
        "event_name": decision.event_name,
        "outcome": decision.outcome.value,
        "limit": decision.limit,
        "current_usage": decision.current_usage,
        "requested": decision.requested,
        "remaining": decision.remaining,
    }
    if decision.outcome == EnforcementOutcome.DENY:
        logger.warning("[enforcement] DENY", extra=extra)
    elif decision.outcome in (EnforcementOutcome.WARN, EnforcementOutcome.OVERAGE):
        logger.info(f"[enforcement] {decision.outcome.value.upper()}", extra=extra)
    else:
        logger.debug("[enforcement] ALLOW", extra=extra)


def check_enforcement(
    customer_id: str,
    creator_id: str,
    meter_name: str,
    requested_increment: int = 1,
    now: Optional[datetime] = None,
) -> EnforcementDecision:
    """
    Decide whether `requested_increment` more units may be recorded.

    Customers without an assignment fall back to the creator's default tier;
    with no default tier they are unlimited.

    Raises:
        NotFoundError: unknown meter
        ValidationError: negative or non-integer increment
    """
    if isinstance(requested_increment, bool) or not isinstance(requested_increment, int) or requested_increment < 0:
        raise ValidationError(f"requested_increment must be a non-negative integer, got {requested_increment!r}")
    now_dt = normalize_now(now)
    context = resolve_context(customer_id, creator_id, meter_name)
    usage = current_usage(context, customer_id, now_dt)
    decision = evaluate(context, usage, requested_increment, now_dt)
    record_decision(decision, customer_id, creator_id)
    return decision
