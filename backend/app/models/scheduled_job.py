"""
Scheduled Job Model
Timing projection of a job, reschedule audit rows and calendar entries
"""

from datetime import date, datetime
from datetime import date as date_type
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

from app.models.common import generate_id, utc_now
from app.models.route_optimization import RouteOptimizationResult
from app.utils.time_utils import HH_MM_REGEX, time_to_minutes, hours_to_minutes


class JobStatus(str, Enum):
    """Job status values consumed by the scheduling engine"""
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = [JobStatus.ASSIGNED.value, JobStatus.IN_PROGRESS.value]
INACTIVE_STATUSES = [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]
CALENDAR_STATUSES = ACTIVE_STATUSES + [JobStatus.COMPLETED.value]


class Urgency(str, Enum):
    """Job urgency"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


class Coordinates(BaseModel):
    """Service location"""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ScheduledJob(BaseModel):
    """Job document as read by the scheduling engine"""
    job_id: str
    contractor_id: Optional[str] = None
    customer_id: Optional[str] = None
    title: Optional[str] = None

    # Timing (contractor-local wall clock)
    date: Optional[date_type] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_hours: Optional[float] = None

    # Lifecycle statuses outside the enum (e.g. "open") are kept as-is
    status: Optional[str] = None

    coordinates: Optional[Coordinates] = None
    address: Optional[str] = None
    urgency: Urgency = Urgency.NORMAL
    notes: Optional[str] = None

    assigned_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_scheduled(self) -> bool:
        return bool(self.date and self.start_time and self.end_time)

    @property
    def duration_minutes(self) -> int:
        if self.duration_hours is not None:
            return hours_to_minutes(self.duration_hours)
        if self.start_time and self.end_time:
            return time_to_minutes(self.end_time) - time_to_minutes(self.start_time)
        return 0


class ScheduleJobRequest(BaseModel):
    """Request to commit a booking for a job"""
    contractor_id: str
    date: date
    start_time: str = Field(pattern=HH_MM_REGEX)
    end_time: Optional[str] = Field(None, pattern=HH_MM_REGEX)
    duration_hours: Optional[float] = Field(None, gt=0, le=24)
    notes: Optional[str] = None
    urgency: Urgency = Urgency.NORMAL

    model_config = ConfigDict(str_strip_whitespace=True)

    @model_validator(mode="after")
    def check_end_or_duration(self) -> "ScheduleJobRequest":
        if self.end_time is None and self.duration_hours is None:
            raise ValueError("Either end_time or duration_hours is required")
        return self


class RescheduleJobRequest(BaseModel):
    """Request to move an existing booking"""
    new_date: date
    new_start: str = Field(pattern=HH_MM_REGEX)
    new_end: str = Field(pattern=HH_MM_REGEX)
    reason: Optional[str] = None
    requested_by: str

    model_config = ConfigDict(str_strip_whitespace=True)


class TimeWindow(BaseModel):
    """A booking's date and wall-clock window"""
    date: date
    start_time: str
    end_time: str


class RescheduleRecord(BaseModel):
    """Immutable reschedule audit row"""
    record_id: str = Field(default_factory=lambda: generate_id("rsh"))
    job_id: str
    requested_by: str
    old: TimeWindow
    new: TimeWindow
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ScheduledJobResponse(BaseModel):
    """Public view of a scheduled job"""
    job_id: str
    contractor_id: Optional[str] = None
    customer_id: Optional[str] = None
    title: Optional[str] = None
    date: Optional[date_type] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_hours: Optional[float] = None
    status: Optional[str] = None
    urgency: Urgency = Urgency.NORMAL
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CalendarEvent(BaseModel):
    """Exported iCalendar event for a job"""
    event_uid: str
    calendar_data: str
    ics_url: str


class CalendarEntry(BaseModel):
    """One job on a contractor's calendar"""
    job_id: str
    title: Optional[str] = None
    date: date
    start_time: str
    end_time: str
    status: str
    address: Optional[str] = None
    customer_id: Optional[str] = None
    notes: Optional[str] = None


class SchedulingStats(BaseModel):
    """Job counts for a contractor over a trailing period"""
    contractor_id: str
    period: str
    since: date
    total_jobs: int = 0
    completed_jobs: int = 0
    cancelled_jobs: int = 0
    avg_job_duration_hours: Optional[float] = None
    working_days: int = 0


class ScheduleJobResult(BaseModel):
    """Committed booking plus the outcome of its side effects"""
    job: ScheduledJobResponse
    calendar_event: Optional[CalendarEvent] = None
    route_optimization: Optional[RouteOptimizationResult] = None


class RescheduleJobResult(BaseModel):
    """Moved booking with its audit row"""
    job: ScheduledJobResponse
    reschedule: RescheduleRecord
    calendar_event: Optional[CalendarEvent] = None
