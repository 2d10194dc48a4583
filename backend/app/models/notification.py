"""
Notification Model
Typed scheduling events handed to the notification gateway
"""

from datetime import date
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from app.models.common import generate_id


class NotificationChannel(str, Enum):
    """Notification delivery channel"""
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"


class NotificationCategory(str, Enum):
    """Scheduling event that triggered the notification"""
    JOB_SCHEDULED = "job_scheduled"
    JOB_RESCHEDULED = "job_rescheduled"
    SCHEDULE_OPTIMIZED = "schedule_optimized"


class RecipientRole(str, Enum):
    """Which side of the booking receives the notification"""
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"


class SchedulingNotification(BaseModel):
    """Structured notification data; presentation is the gateway's concern"""
    notification_id: str = Field(default_factory=lambda: generate_id("ntf"))
    category: NotificationCategory
    recipient_id: str
    recipient_role: RecipientRole
    channels: list[NotificationChannel]

    job_id: str
    job_title: Optional[str] = None
    date: date
    start_time: str
    end_time: Optional[str] = None

    # Reschedules only
    requested_by_role: Optional[RecipientRole] = None
    previous_date: Optional[date] = None
    previous_start_time: Optional[str] = None
