"""Billing cycle worker.

Usage:
    python -m tierline.workers.billing_worker --creator creator_1 --creator creator_2
    python -m tierline.workers.billing_worker --creator creator_1 --period 2026-09

Also the RQ job target for queue_client.enqueue_billing_cycle.
"""
from __future__ import annotations

import argparse
import json
import logging
from typing import Dict, List, Optional

from tierline.core.clock import previous_billing_period
from tierline.core.config import settings
from tierline.core.database import create_all_tables
from tierline.core.errors import AppError
from tierline.core.logging import configure_logging
from tierline.features.billing.service import process_billing_cycle

logger = logging.getLogger("tierline.workers.billing")


def run_billing_job(creator_id: str, billing_period: str) -> Dict:
    """RQ entry point. Returns the JSON form of the BillingCycleResult."""
    result = process_billing_cycle(creator_id, billing_period)
    return result.model_dump(mode="json")


def run_for_creators(creator_ids: List[str], billing_period: Optional[str] = None) -> Dict[str, str]:
    """Process one period for each creator. Returns creator_id -> status (or error code)."""
    period = billing_period or previous_billing_period()
    outcomes: Dict[str, str] = {}
    for creator_id in creator_ids:
        try:
            result = process_billing_cycle(creator_id, period)
        except AppError as exc:
            logger.error(
                "billing.worker.failed",
                extra={"creator_id": creator_id, "billing_period": period, "error_code": exc.code},
            )
            outcomes[creator_id] = exc.code
            continue
        outcomes[creator_id] = result.status.value
    return outcomes


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Billing cycle worker")
    parser.add_argument("--creator", action="append", required=True, help="Creator id (repeatable)")
    parser.add_argument("--period", default=None, help="Billing period YYYY-MM (default: previous month)")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    create_all_tables()
    outcomes = run_for_creators(args.creator, args.period)
    print(json.dumps(outcomes, sort_keys=True))
    return 0 if all(status == "finalized" for status in outcomes.values()) else 1


if __name__ == "__main__":
    raise SystemExit(main())
