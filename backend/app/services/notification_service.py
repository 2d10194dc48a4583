"""
Notification Service
Hands scheduling events to the external multi-channel notification gateway
"""

import logging
from typing import Optional

import httpx

from app.config import get_settings
from app.models.notification import NotificationCategory, RecipientRole, SchedulingNotification

logger = logging.getLogger(__name__)


class NotificationResult:
    """Result of a gateway hand-off"""
    def __init__(
        self,
        success: bool,
        message_id: Optional[str] = None,
        error: Optional[str] = None
    ):
        self.success = success
        self.message_id = message_id
        self.error = error


def render_message(notification: SchedulingNotification) -> tuple[str, str]:
    """Title and body for a scheduling event"""
    what = notification.job_title or "Your job"
    when = f"{notification.date.isoformat()} at {notification.start_time}"

    if notification.category == NotificationCategory.JOB_SCHEDULED:
        if notification.recipient_role == RecipientRole.CONTRACTOR:
            return "New job scheduled", f"{what} has been added to your schedule for {when}."
        return "Job scheduled", f"{what} is scheduled for {when}."

    if notification.category == NotificationCategory.JOB_RESCHEDULED:
        previous = ""
        if notification.previous_date and notification.previous_start_time:
            previous = (
                f" (was {notification.previous_date.isoformat()} "
                f"at {notification.previous_start_time})"
            )
        who = "the customer" if notification.requested_by_role == RecipientRole.CUSTOMER else "the contractor"
        return "Job rescheduled", f"{what} was moved to {when}{previous} by {who}."

    if notification.recipient_role == RecipientRole.CONTRACTOR:
        return "Route optimized", f"Your route for {notification.date.isoformat()} was reordered."
    return "Arrival time updated", f"{what} now starts at {when}."


class NotificationService:
    """
    Client for the notification gateway.

    Delivery mechanics (push, email, sms) belong to the gateway; failures are
    logged and reported in the result, never raised.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        """Check if a gateway URL is set"""
        return bool(self.settings.NOTIFICATION_SERVICE_URL)

    async def send_multi_channel(self, notification: SchedulingNotification) -> NotificationResult:
        """
        Send one notification to a user over several channels

        Args:
            notification: Typed scheduling event

        Returns:
            NotificationResult with success status
        """
        if not self.is_configured:
            logger.info(
                f"Notification gateway not configured, skipping "
                f"{notification.category.value} for {notification.recipient_id}"
            )
            return NotificationResult(success=False, error="Notification gateway not configured")

        title, body = render_message(notification)
        payload = {
            "user_id": notification.recipient_id,
            "channels": [c.value for c in notification.channels],
            "title": title,
            "body": body,
            "data": notification.model_dump(mode="json")
        }

        headers = {}
        if self.settings.NOTIFICATION_SERVICE_TOKEN:
            headers["Authorization"] = f"Bearer {self.settings.NOTIFICATION_SERVICE_TOKEN}"

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    self.settings.NOTIFICATION_SERVICE_URL,
                    json=payload,
                    headers=headers,
                    timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS
                )
        except httpx.HTTPError as e:
            logger.error(f"Notification gateway request failed: {e}")
            return NotificationResult(success=False, error=str(e))

        if response.status_code >= 400:
            logger.error(
                f"Notification gateway returned {response.status_code} "
                f"for {notification.notification_id}"
            )
            return NotificationResult(success=False, error=f"HTTP {response.status_code}")

        logger.info(
            f"{notification.category.value} sent to {notification.recipient_role.value} "
            f"{notification.recipient_id} via {payload['channels']}"
        )
        return NotificationResult(success=True, message_id=notification.notification_id)


_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get notification service singleton"""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
