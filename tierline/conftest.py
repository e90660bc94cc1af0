# tierline/conftest.py
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# In-memory SQLite shared through a static pool; set before any tierline import
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("LIMIT_CACHE_TTL_SECONDS", "30")

CREATOR_ID = "creator_1"
ASSIGNED_AT = datetime(2026, 3, 1, tzinfo=timezone.utc)
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Fresh tables, empty enforcement cache and zeroed metrics for every test.
    """
    from tierline.core.database import reset_database
    from tierline.core.metrics import METRICS
    from tierline.features.enforcement.cache import limit_cache

    reset_database()
    limit_cache.invalidate()
    METRICS.reset()
    yield
    limit_cache.invalidate()


@pytest.fixture
def creator_id():
    return CREATOR_ID


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_meter(creator_id):
    """Factory: create a meter with one plan limit per (plan_name, kwargs) pair."""
    from tierline.features.meters.service import create_meter

    def _make(event_name="api_calls", aggregation_type="count", billing_model="metered", limits=None, **extra):
        definition = {
            "event_name": event_name,
            "aggregation_type": aggregation_type,
            "billing_model": billing_model,
            "plan_limits": limits or [],
            **extra,
        }
        return create_meter(creator_id, definition, now=ASSIGNED_AT)

    return _make


@pytest.fixture
def make_tier(creator_id):
    from tierline.features.tiers.service import create_tier

    def _make(name="Pro", price=2000, **extra):
        return create_tier(creator_id, {"name": name, "price": price, **extra}, now=ASSIGNED_AT)

    return _make


@pytest.fixture
def assign(creator_id):
    from tierline.features.tiers.service import assign_customer_to_tier

    def _assign(customer_id, tier, at=ASSIGNED_AT):
        return assign_customer_to_tier(customer_id, creator_id, tier.id, now=at)

    return _assign


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from tierline.main import app

    with TestClient(app) as test_client:
        yield test_client
