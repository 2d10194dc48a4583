"""
Scheduling Engine Data Models
Pydantic models for MongoDB documents
"""

from app.models.availability import (
    AvailabilityProfile, AvailabilityUpdate, AvailabilityResponse,
    BlockedDate, BlockedDateInput, DayHours, DaySlots, Slot, WEEKDAYS
)
from app.models.scheduled_job import (
    ScheduledJob, JobStatus, Urgency, Coordinates, ScheduleJobRequest,
    RescheduleJobRequest, RescheduleRecord, TimeWindow, CalendarEvent,
    CalendarEntry, SchedulingStats, ScheduleJobResult, RescheduleJobResult, ACTIVE_STATUSES
)
from app.models.booking_ledger import ActiveBooking, BookingClaim, DayLedger
from app.models.route_optimization import (
    OptimizedRoute, RouteDestination, RouteLeg, RouteOptimizationResult, RouteStop
)
from app.models.notification import (
    NotificationChannel, NotificationCategory, RecipientRole, SchedulingNotification
)

__all__ = [
    # Availability
    "AvailabilityProfile", "AvailabilityUpdate", "AvailabilityResponse",
    "BlockedDate", "BlockedDateInput", "DayHours", "DaySlots", "Slot", "WEEKDAYS",
    # Scheduled jobs
    "ScheduledJob", "JobStatus", "Urgency", "Coordinates", "ScheduleJobRequest",
    "RescheduleJobRequest", "RescheduleRecord", "TimeWindow", "CalendarEvent",
    "CalendarEntry", "SchedulingStats", "ScheduleJobResult", "RescheduleJobResult", "ACTIVE_STATUSES",
    # Ledger
    "ActiveBooking", "BookingClaim", "DayLedger",
    # Routing
    "OptimizedRoute", "RouteDestination", "RouteLeg", "RouteOptimizationResult", "RouteStop",
    # Notification
    "NotificationChannel", "NotificationCategory", "RecipientRole", "SchedulingNotification",
]
