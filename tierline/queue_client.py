# tierline/queue_client.py
"""
RQ queue client for billing runs.
Schedulers and admin actions enqueue (creator_id, billing_period) jobs here;
workers pick them up with `rq worker billing`.
"""
from typing import Optional

from redis import Redis
from rq import Queue

from tierline.core.config import settings
from tierline.features.billing.service import resolve_closed_period

_queue: Optional[Queue] = None


def get_queue() -> Queue:
    global _queue
    if _queue is None:
        redis_conn = Redis.from_url(settings.REDIS_URL)
        _queue = Queue(settings.BILLING_QUEUE_NAME, connection=redis_conn)
    return _queue


def enqueue_billing_cycle(creator_id: str, billing_period: str) -> str:
    """
    Enqueue a billing run.

    The job id is derived from the canonical run key so enqueueing the same
    period twice does not queue a second job while the first is pending.

    Returns:
        Job ID

    Raises:
        ValidationError: malformed billing_period
        PreconditionError: the period has not ended yet
    """
    from tierline.workers.billing_worker import run_billing_job

    billing_period, _, _ = resolve_closed_period(billing_period)
    job = get_queue().enqueue(
        run_billing_job,
        creator_id,
        billing_period,
        job_id=f"billing-{creator_id}-{billing_period}",
        job_timeout=settings.BILLING_RUN_TIMEOUT_SECONDS + 60,
        result_ttl=86400,
    )
    return job.id
