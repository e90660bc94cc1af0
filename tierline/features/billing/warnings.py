"""
tierline/features/billing/warnings.py

Soft-limit warnings.

A customer is warned at most once per meter per usage period. The warned
marker is claimed before delivery and released again if delivery fails, so
the next scan retries instead of dropping the warning.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError

from tierline.core.clock import normalize_now
from tierline.core.database import get_db_session, usage_warnings
from tierline.core.metrics import usage_warnings_sent_total
from tierline.features.billing.notifications import (
    NotificationDeliveryError,
    NotificationSender,
    get_default_sender,
)
from tierline.features.meters.service import get_meters
from tierline.features.tiers.service import (
    current_window,
    get_tier,
    list_active_assignments,
    resolve_plan_limit,
    threshold_reached,
)
from tierline.features.usage.service import aggregate
from tierline.models.billing import UsageWarning

logger = logging.getLogger("tierline.billing")


def period_key(period_start: datetime) -> str:
    return period_start.strftime("%Y-%m-%dT%H:%M:%S")


def _claim_marker(creator_id: str, warning: UsageWarning, meter_id: str, key: str, now: datetime) -> bool:
    try:
        with get_db_session() as session:
            exists = session.execute(
                select(usage_warnings.c.id)
                .where(usage_warnings.c.customer_id == warning.customer_id)
                .where(usage_warnings.c.meter_id == meter_id)
                .where(usage_warnings.c.period_key == key)
            ).first()
            if exists:
                return False
            session.execute(
                insert(usage_warnings).values(
                    creator_id=creator_id,
                    customer_id=warning.customer_id,
                    meter_id=meter_id,
                    period_key=key,
                    usage_fraction=warning.usage_fraction,
                    current_usage=warning.current_usage,
                    limit_value=warning.limit_value,
                    warned_at=now,
                )
            )
    except IntegrityError:
        # Claimed by a concurrent scan
        return False
    return True


def _release_marker(customer_id: str, meter_id: str, key: str) -> None:
    with get_db_session() as session:
        session.execute(
            delete(usage_warnings)
            .where(usage_warnings.c.customer_id == customer_id)
            .where(usage_warnings.c.meter_id == meter_id)
            .where(usage_warnings.c.period_key == key)
        )


def send_usage_warnings(
    creator_id: str,
    notifier: Optional[NotificationSender] = None,
    now: Optional[datetime] = None,
) -> List[UsageWarning]:
    """
    Warn customers whose current-period usage crossed a soft threshold.

    Returns:
        The warnings handed to the notifier in this scan
    """
    sender = notifier or get_default_sender()
    now_dt = normalize_now(now)
    meters = [meter for meter in get_meters(creator_id) if meter.active]
    sent: List[UsageWarning] = []

    for assignment in list_active_assignments(creator_id):
        tier = get_tier(assignment.tier_id, creator_id)
        start, end = current_window(assignment, now_dt)
        key = period_key(start)

        for meter in meters:
            limit = resolve_plan_limit(meter, tier)
            if limit is None or not limit.limit_value:
                continue
            usage = aggregate(meter.id, assignment.customer_id, start, end, meter.aggregation_type, meter.unique_property)
            if not threshold_reached(usage, limit):
                continue

            warning = UsageWarning(
                creator_id=creator_id,
                customer_id=assignment.customer_id,
                meter_name=meter.event_name,
                usage_fraction=round(usage / limit.limit_value, 4),
                current_usage=usage,
                limit_value=limit.limit_value,
            )
            if not _claim_marker(creator_id, warning, meter.id, key, now_dt):
                continue

            try:
                sender.send(warning)
            except NotificationDeliveryError:
                _release_marker(assignment.customer_id, meter.id, key)
                logger.warning(
                    "usage.warning.released",
                    extra={"creator_id": creator_id, "customer_id": assignment.customer_id, "event_name": meter.event_name},
                )
                continue
            except Exception:
                _release_marker(assignment.customer_id, meter.id, key)
                raise

            usage_warnings_sent_total.inc()
            sent.append(warning)

    logger.info("usage.warnings.scan", extra={"creator_id": creator_id, "outcome": f"{len(sent)} sent"})
    return sent
