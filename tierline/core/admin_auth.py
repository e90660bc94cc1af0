"""
Caller identity for the HTTP surface.

Authentication itself lives upstream (session/auth gateway). By the time a
request reaches this service the gateway has resolved:
- X-Creator-Id: the creator on whose behalf admin and ingestion calls run
- X-Admin-Key: shared secret for scheduler/admin billing triggers

Identity is passed into every service call explicitly; nothing here is
stored in ambient request state beyond the request itself.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from tierline.core.config import settings
from tierline.core.errors import PermissionError, ValidationError

logger = logging.getLogger("tierline.auth")


@dataclass
class AdminActor:
    """Represents an authenticated admin/scheduler caller."""
    actor_id: str  # "admin:<key hash prefix>"
    auth_mechanism: str = "x_admin_key"


def require_creator(x_creator_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the creator the call is scoped to."""
    creator_id = (x_creator_id or "").strip()
    if not creator_id:
        raise ValidationError("X-Creator-Id header is required")
    return creator_id


def require_admin(x_admin_key: Optional[str] = Header(None)) -> AdminActor:
    """
    FastAPI dependency: require the admin key.

    Raises PermissionError when the key is missing, wrong, or not configured.
    """
    expected = settings.ADMIN_KEY
    provided = (x_admin_key or "").strip()
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        logger.warning("admin.auth.denied", extra={"error_code": "forbidden"})
        raise PermissionError("Invalid or missing X-Admin-Key header")

    key_hash = hashlib.sha256(provided.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")
