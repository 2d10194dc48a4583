"""
Slot Generator
Open fixed-size slots per day for a contractor
"""

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Callable, Iterator, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_settings
from app.models.availability import AvailabilityProfile, DaySlots, Slot, weekday_name
from app.models.booking_ledger import ActiveBooking
from app.models.common import utc_now
from app.models.scheduled_job import ACTIVE_STATUSES
from app.services.availability_service import AvailabilityService
from app.services.booking_ledger import booking_from_job
from app.services.booking_validator import busy_intervals
from app.services.job_store import JobStore
from app.utils.exceptions import ValidationError
from app.utils.time_utils import date_range, minutes_to_time_str, time_to_minutes, to_utc, today_in_zone

logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 7


def slots_for_day(
    profile: AvailabilityProfile,
    day: date,
    bookings: list[ActiveBooking],
    increment_minutes: int,
    pad_minutes: int = 0
) -> DaySlots:
    """
    Walk a day's working window in fixed increments.

    Disabled weekdays and fully blocked dates yield no slots. A trailing
    remainder shorter than one increment is dropped.
    """
    day_slots = DaySlots(date=day, day_of_week=weekday_name(day))

    hours = profile.hours_for(day)
    if not hours.enabled or profile.is_day_blocked(day):
        return day_slots

    busy = busy_intervals(profile, day, bookings, pad_minutes)
    window_end = time_to_minutes(hours.end)
    current = time_to_minutes(hours.start)

    while current + increment_minutes <= window_end:
        slot_end = current + increment_minutes
        if not any(b.overlaps(current, slot_end) for b in busy):
            day_slots.slots.append(Slot(
                start_time=minutes_to_time_str(current),
                end_time=minutes_to_time_str(slot_end),
                duration_minutes=increment_minutes,
                starts_at=to_utc(day, current, profile.time_zone)
            ))
        current = slot_end

    return day_slots


class DaySlotSequence:
    """
    Finite, restartable sequence of DaySlots, one per calendar day.

    Each iteration computes days lazily from the snapshot taken when the
    sequence was created.
    """

    def __init__(
        self,
        profile: AvailabilityProfile,
        start: date,
        end: date,
        bookings_by_day: dict[date, list[ActiveBooking]],
        increment_minutes: int,
        pad_minutes: int = 0
    ):
        self.profile = profile
        self.start = start
        self.end = end
        self.bookings_by_day = bookings_by_day
        self.increment_minutes = increment_minutes
        self.pad_minutes = pad_minutes

    def __iter__(self) -> Iterator[DaySlots]:
        for day in date_range(self.start, self.end):
            yield slots_for_day(
                self.profile,
                day,
                self.bookings_by_day.get(day, []),
                self.increment_minutes,
                self.pad_minutes
            )

    def __len__(self) -> int:
        return (self.end - self.start).days + 1


class SlotGenerator:
    """Read-only slot queries for booking UIs"""

    def __init__(self, db: AsyncIOMotorDatabase, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.availability = AvailabilityService(db)
        self.jobs = JobStore(db)
        self.settings = get_settings()
        self.clock = clock or utc_now

    async def generate_slots(
        self,
        contractor_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        increment_minutes: Optional[int] = None
    ) -> DaySlotSequence:
        """
        Open slots for every day from start to end inclusive.

        start defaults to today in the contractor's time zone and end to the
        last day of a week from start.

        Raises:
            NotFoundError: contractor has no availability profile
            ValidationError: inverted or oversized range
        """
        profile = await self.availability.get_availability(contractor_id)
        start = start or today_in_zone(profile.time_zone, self.clock())
        end = end or start + timedelta(days=DEFAULT_RANGE_DAYS - 1)

        if end < start:
            raise ValidationError(
                message="End date must not be before start date",
                code="INVALID_DATE_RANGE"
            )
        if end - start >= timedelta(days=self.settings.MAX_SLOT_RANGE_DAYS):
            raise ValidationError(
                message=f"Date range cannot exceed {self.settings.MAX_SLOT_RANGE_DAYS} days",
                code="INVALID_DATE_RANGE"
            )

        increment = increment_minutes or self.settings.SLOT_INCREMENT_MINUTES
        if increment <= 0:
            raise ValidationError(message="Slot increment must be positive", code="INVALID_INCREMENT")

        jobs = await self.jobs.find_in_range(contractor_id, start, end, ACTIVE_STATUSES)

        bookings_by_day = defaultdict(list)
        for job in jobs:
            if job.is_scheduled:
                bookings_by_day[job.date].append(booking_from_job(job))

        pad = profile.break_duration_minutes if self.settings.BREAK_BUFFER_ENABLED else 0

        logger.debug(
            f"Generating slots for {contractor_id} {start.isoformat()}..{end.isoformat()} "
            f"({len(jobs)} active jobs)"
        )

        return DaySlotSequence(profile, start, end, dict(bookings_by_day), increment, pad)
