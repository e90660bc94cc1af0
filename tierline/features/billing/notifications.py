"""
Notification collaborator protocol.

The engine decides who gets a usage warning; delivery belongs to the
collaborator. Implementations raise NotificationDeliveryError when a warning
could not be handed off, so the caller can release its warned marker.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol
from uuid import uuid4

import httpx

from tierline.core.config import settings
from tierline.models.billing import UsageWarning

logger = logging.getLogger("tierline.notifications")

EVENT_TYPE = "usage.warning"


class NotificationDeliveryError(Exception):
    """Raised when a warning could not be delivered."""
    pass


class NotificationSender(Protocol):
    def send(self, warning: UsageWarning) -> None:
        """
        Deliver one usage warning.

        Raises:
            NotificationDeliveryError: delivery failed; the warning may be retried
        """
        ...


class LoggingNotificationSender:
    """Default sender: records the warning in the log stream."""

    def __init__(self):
        self.sent: List[UsageWarning] = []

    def send(self, warning: UsageWarning) -> None:
        self.sent.append(warning)
        logger.info(
            "usage.warning",
            extra={
                "creator_id": warning.creator_id,
                "customer_id": warning.customer_id,
                "event_name": warning.meter_name,
                "usage_fraction": warning.usage_fraction,
            },
        )


def _canonical_json_bytes(payload: Dict) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()


def sign_payload(secret: str, timestamp: int, event_id: str, body_bytes: bytes) -> str:
    """HMAC-SHA256 over timestamp + event_id + raw body."""
    signed_content = f"{timestamp}.{event_id}.".encode() + body_bytes
    digest = hmac.new(secret.encode(), signed_content, hashlib.sha256).hexdigest()
    return f"t={timestamp},e={event_id},v1={digest}"


class WebhookNotificationSender:
    """POSTs signed warning events to the notification collaborator."""

    def __init__(
        self,
        url: str,
        secret: str,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.secret = secret
        self.timeout_seconds = timeout_seconds or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._client = client

    def _post(self, body_bytes: bytes, headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(self.url, content=body_bytes, headers=headers)
        with httpx.Client(timeout=self.timeout_seconds) as client:
            return client.post(self.url, content=body_bytes, headers=headers)

    def send(self, warning: UsageWarning) -> None:
        event_id = str(uuid4())
        timestamp = int(datetime.now(timezone.utc).timestamp())
        body = {
            "event_id": event_id,
            "event_type": EVENT_TYPE,
            "timestamp": timestamp,
            "data": warning.model_dump(),
        }
        body_bytes = _canonical_json_bytes(body)
        headers = {
            "Content-Type": "application/json",
            "X-Tierline-Signature": sign_payload(self.secret, timestamp, event_id, body_bytes),
            "X-Tierline-Event-Type": EVENT_TYPE,
            "X-Tierline-Event-ID": event_id,
            "X-Tierline-Timestamp": str(timestamp),
        }

        try:
            response = self._post(body_bytes, headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "usage.warning.delivery_failed",
                extra={"creator_id": warning.creator_id, "customer_id": warning.customer_id, "error_code": type(exc).__name__},
            )
            raise NotificationDeliveryError(str(exc)) from exc


def get_default_sender() -> NotificationSender:
    if settings.NOTIFICATION_WEBHOOK_URL and settings.NOTIFICATION_WEBHOOK_SECRET:
        return WebhookNotificationSender(settings.NOTIFICATION_WEBHOOK_URL, settings.NOTIFICATION_WEBHOOK_SECRET)
    return LoggingNotificationSender()
