"""
Booking Validator
Evaluates one candidate booking against a contractor's availability
"""

from datetime import date, datetime
from enum import Enum
from typing import Callable, Iterable, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_settings
from app.models.availability import AvailabilityProfile, weekday_name
from app.models.booking_ledger import ActiveBooking
from app.models.common import utc_now
from app.services.availability_service import AvailabilityService
from app.services.booking_ledger import BookingLedger
from app.utils.exceptions import AvailabilityConflictError, ValidationError
from app.utils.time_utils import hours_to_minutes, minutes_to_time_str, time_to_minutes, today_in_zone

logger = logging.getLogger(__name__)


class RejectReason(str, Enum):
    """Machine-readable rejection codes"""
    TOO_FAR_IN_ADVANCE = "TOO_FAR_IN_ADVANCE"
    PAST_DATE = "PAST_DATE"
    DAY_UNAVAILABLE = "DAY_UNAVAILABLE"
    OUTSIDE_HOURS = "OUTSIDE_HOURS"
    CONFLICT = "CONFLICT"
    DAILY_LIMIT = "DAILY_LIMIT"


class ValidationResult:
    """Accept, or reject with a reason and structured details"""

    def __init__(
        self,
        accepted: bool,
        reason: Optional[RejectReason] = None,
        message: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.accepted = accepted
        self.reason = reason
        self.message = message
        self.details = details or {}

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: RejectReason, message: str, **details) -> "ValidationResult":
        return cls(accepted=False, reason=reason, message=message, details=details)

    def raise_for_rejection(self) -> None:
        """Raise AvailabilityConflictError carrying the reason code"""
        if not self.accepted:
            raise AvailabilityConflictError(
                reason=self.reason.value,
                message=self.message,
                details={"reason": self.reason.value, **self.details}
            )


def busy_intervals(
    profile: AvailabilityProfile,
    day: date,
    bookings: Iterable[ActiveBooking],
    pad_minutes: int = 0,
    exclude_job_id: Optional[str] = None
) -> list[ActiveBooking]:
    """
    Intervals a new booking must not touch on a day.

    Active bookings (padded on both sides by pad_minutes) plus partial blocked
    windows; blocked windows carry an empty job_id.
    """
    busy = []
    for booking in bookings:
        if exclude_job_id and booking.job_id == exclude_job_id:
            continue
        busy.append(ActiveBooking(
            job_id=booking.job_id,
            start=booking.start - pad_minutes,
            end=booking.end + pad_minutes,
            title=booking.title
        ))

    for block in profile.blocks_on(day):
        if not block.blocks_whole_day():
            busy.append(ActiveBooking(
                job_id="",
                start=time_to_minutes(block.start_time),
                end=time_to_minutes(block.end_time),
                title=block.reason
            ))

    return sorted(busy, key=lambda b: (b.start, b.end))


class BookingValidator:
    """Sequential availability checks, short-circuiting at the first failure"""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        ledger: Optional[BookingLedger] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.clock = clock or utc_now
        self.availability = AvailabilityService(db)
        self.ledger = ledger or BookingLedger(db, clock=self.clock)
        self.settings = get_settings()

    def pad_minutes(self, profile: AvailabilityProfile) -> int:
        """Break buffer applied around active bookings"""
        if self.settings.BREAK_BUFFER_ENABLED:
            return profile.break_duration_minutes
        return 0

    async def validate(
        self,
        contractor_id: str,
        day: date,
        start_time: str,
        duration_hours: float,
        exclude_job_id: Optional[str] = None
    ) -> ValidationResult:
        """
        Validate a candidate booking against current state.

        Raises:
            NotFoundError: contractor has no availability profile
        """
        profile = await self.availability.get_availability(contractor_id)
        _, _, bookings, _ = await self.ledger.snapshot(contractor_id, day)
        return self.evaluate(profile, day, start_time, duration_hours, bookings, exclude_job_id)

    def evaluate(
        self,
        profile: AvailabilityProfile,
        day: date,
        start_time: str,
        duration_hours: float,
        bookings: list[ActiveBooking],
        exclude_job_id: Optional[str] = None
    ) -> ValidationResult:
        """
        Evaluate a candidate booking against a profile and the day's bookings.

        Pure apart from reading the clock, so it can be re-run inside a commit
        against a fresh snapshot.
        """
        start = time_to_minutes(start_time)
        end = start + hours_to_minutes(duration_hours)
        if end <= start:
            raise ValidationError(message="Booking duration must be positive", code="INVALID_DURATION")

        # Advance-booking window, in the contractor's calendar
        today = today_in_zone(profile.time_zone, self.clock())
        delta = (day - today).days
        if delta < 0:
            return ValidationResult.reject(
                RejectReason.PAST_DATE,
                f"{day.isoformat()} is in the past",
                date=day.isoformat(),
                today=today.isoformat()
            )
        if delta > profile.advance_booking_days:
            return ValidationResult.reject(
                RejectReason.TOO_FAR_IN_ADVANCE,
                f"Bookings can be made at most {profile.advance_booking_days} days ahead",
                date=day.isoformat(),
                advance_booking_days=profile.advance_booking_days
            )

        # Weekday and full-day blocks
        day_name = weekday_name(day)
        hours = profile.hours_for(day)
        if not hours.enabled:
            return ValidationResult.reject(
                RejectReason.DAY_UNAVAILABLE,
                f"Contractor does not work on {day_name}",
                day_of_week=day_name,
                blocked=False
            )
        if profile.is_day_blocked(day):
            block = next(b for b in profile.blocks_on(day) if b.blocks_whole_day())
            return ValidationResult.reject(
                RejectReason.DAY_UNAVAILABLE,
                f"Contractor is unavailable on {day.isoformat()}",
                day_of_week=day_name,
                blocked=True,
                blocked_reason=block.reason
            )

        # Working window
        window_start = time_to_minutes(hours.start)
        window_end = time_to_minutes(hours.end)
        if start < window_start or end > window_end:
            return ValidationResult.reject(
                RejectReason.OUTSIDE_HOURS,
                f"Booking must fall within working hours {hours.start}-{hours.end}",
                working_start=hours.start,
                working_end=hours.end
            )

        # Existing bookings and partial blocks
        busy = busy_intervals(profile, day, bookings, self.pad_minutes(profile), exclude_job_id)
        for interval in busy:
            if interval.overlaps(start, end):
                if not interval.job_id:
                    return ValidationResult.reject(
                        RejectReason.CONFLICT,
                        f"Contractor is unavailable {minutes_to_time_str(interval.start)}"
                        f"-{minutes_to_time_str(interval.end)}",
                        job_id=None,
                        title=interval.title,
                        blocked=True
                    )
                return ValidationResult.reject(
                    RejectReason.CONFLICT,
                    "Requested time overlaps an existing booking",
                    job_id=interval.job_id,
                    title=interval.title
                )

        # Daily cap
        booked = {b.job_id for b in bookings if b.job_id != exclude_job_id}
        if len(booked) >= profile.max_jobs_per_day:
            return ValidationResult.reject(
                RejectReason.DAILY_LIMIT,
                f"Contractor already has {len(booked)} jobs on {day.isoformat()}",
                max_jobs_per_day=profile.max_jobs_per_day,
                current_jobs=len(booked)
            )

        return ValidationResult.accept()
