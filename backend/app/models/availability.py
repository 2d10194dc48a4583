"""
Availability Model
Contractor working hours, booking limits and blocked dates
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from app.models.common import BaseDocument
from app.utils.time_utils import HH_MM_REGEX

WEEKDAYS = [
    "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday"
]


def weekday_name(day: date) -> str:
    """Lowercase weekday name for a date"""
    return WEEKDAYS[day.weekday()]


class DayHours(BaseModel):
    """Working window for one weekday"""
    enabled: bool = False
    start: Optional[str] = None  # HH:MM
    end: Optional[str] = None  # HH:MM


class BlockedDate(BaseModel):
    """Full-day or partial block on a date"""
    date: date
    reason: str = "Unavailable"
    all_day: bool = True

    # Only used when all_day is False
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    def blocks_whole_day(self) -> bool:
        """Partial blocks without a time range suppress the whole day"""
        return self.all_day or not (self.start_time and self.end_time)


class AvailabilityProfile(BaseDocument):
    """Per-contractor availability document"""
    contractor_id: str
    working_hours: dict[str, DayHours]
    time_zone: str

    break_duration_minutes: int = 30
    max_jobs_per_day: int = 6
    advance_booking_days: int = 30
    emergency_available: bool = False

    # Replaced wholesale on every update
    blocked_dates: list[BlockedDate] = Field(default_factory=list)

    def hours_for(self, day: date) -> DayHours:
        """Working hours for the weekday of a date"""
        return self.working_hours.get(weekday_name(day), DayHours())

    def blocks_on(self, day: date) -> list[BlockedDate]:
        """Blocked date entries falling on a date"""
        return [b for b in self.blocked_dates if b.date == day]

    def is_day_blocked(self, day: date) -> bool:
        """Whether a date is blocked for the whole day"""
        return any(b.blocks_whole_day() for b in self.blocks_on(day))


class BlockedDateInput(BaseModel):
    """Blocked date as submitted by the contractor"""
    date: date
    reason: Optional[str] = None
    all_day: bool = True
    start_time: Optional[str] = Field(None, pattern=HH_MM_REGEX)
    end_time: Optional[str] = Field(None, pattern=HH_MM_REGEX)


class AvailabilityUpdate(BaseModel):
    """Schema for replacing a contractor's availability"""
    # Validated by the availability store so malformed hours surface as ValidationError
    working_hours: dict[str, dict]
    time_zone: str

    break_duration_minutes: int = Field(30, ge=0, le=240)
    max_jobs_per_day: int = Field(6, ge=1, le=50)
    advance_booking_days: int = Field(30, ge=0, le=365)
    emergency_available: bool = False

    blocked_dates: list[BlockedDateInput] = Field(default_factory=list)

    model_config = ConfigDict(str_strip_whitespace=True)


class AvailabilityResponse(BaseModel):
    """Public availability response"""
    contractor_id: str
    working_hours: dict[str, DayHours]
    time_zone: str
    break_duration_minutes: int
    max_jobs_per_day: int
    advance_booking_days: int
    emergency_available: bool
    blocked_dates: list[BlockedDate]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Slot(BaseModel):
    """Open, fixed-size window inside a working day"""
    start_time: str
    end_time: str
    duration_minutes: int
    starts_at: datetime  # UTC instant of start_time in the contractor's zone
    available: bool = True


class DaySlots(BaseModel):
    """Open slots for one calendar day"""
    date: date
    day_of_week: str
    slots: list[Slot] = Field(default_factory=list)
