"""
Outbound email notifications.

Fire-and-forget: the mutation has already committed by the time a
notification goes out, so a failure here is logged and swallowed.
"""
from typing import Optional

import httpx

from treasury.config import settings
from treasury.logging_config import logger


class NotificationType:
    SUBMISSION = "submission"
    STATUS_CHANGE = "status_change"
    COMMENT = "comment"
    AUDIT_REQUEST = "audit_request"
    DEPOSIT_SUBMISSION = "deposit_submission"
    DEPOSIT_STATUS_CHANGE = "deposit_status_change"


class EmailNotifier:
    """POSTs ``{"type", "recordId"}`` to the email service."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, notification_type: str, record_id: str, **extra) -> bool:
        """Send one notification. Returns True when the email service accepted it."""
        if not self.enabled:
            logger.debug(f"Notifications disabled, skipping {notification_type} for {record_id}")
            return False

        payload = {"type": notification_type, "recordId": record_id, **extra}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                f"Notification {notification_type} for {record_id} failed: {e}",
                extra={"notification_type": notification_type, "record_id": record_id},
            )
            return False

        logger.info(f"Notification {notification_type} sent for {record_id}")
        return True


def build_notifier() -> EmailNotifier:
    return EmailNotifier(settings.NOTIFY_URL, timeout=settings.NOTIFY_TIMEOUT)
