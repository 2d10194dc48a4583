"""
Availability Service
Stores contractor working hours, booking limits and blocked dates
"""

import logging
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.models.availability import (
    AvailabilityProfile, AvailabilityUpdate, BlockedDate, BlockedDateInput, WEEKDAYS
)
from app.models.common import utc_now
from app.utils.exceptions import NotFoundError, ValidationError
from app.utils.retry import retry
from app.utils.time_utils import is_valid_time_str, is_valid_zone, time_to_minutes

logger = logging.getLogger(__name__)


def validate_working_hours(working_hours: Any) -> dict[str, dict]:
    """
    Validate the weekly working hours mapping.

    All seven weekdays must be present; enabled days need HH:MM start and end
    with start before end.

    Returns:
        Normalized mapping of weekday -> {enabled, start, end}

    Raises:
        ValidationError listing every problem found
    """
    if not isinstance(working_hours, dict):
        raise ValidationError(
            message="Working hours must be an object keyed by weekday",
            code="INVALID_WORKING_HOURS"
        )

    errors = []
    normalized = {}
    submitted = {str(k).lower(): v for k, v in working_hours.items()}

    for day in WEEKDAYS:
        hours = submitted.get(day)
        if not isinstance(hours, dict):
            errors.append({"field": day, "message": f"Missing working hours for {day}"})
            continue

        enabled = bool(hours.get("enabled", False))
        start = hours.get("start")
        end = hours.get("end")

        if enabled:
            if not is_valid_time_str(start) or not is_valid_time_str(end):
                errors.append({"field": day, "message": f"Invalid working hours for {day}"})
                continue
            if time_to_minutes(start) >= time_to_minutes(end):
                errors.append({"field": day, "message": f"Start must be before end for {day}"})
                continue

        normalized[day] = {"enabled": enabled, "start": start, "end": end}

    unknown = sorted(set(submitted) - set(WEEKDAYS))
    for key in unknown:
        errors.append({"field": key, "message": f"Unknown weekday '{key}'"})

    if errors:
        raise ValidationError(
            message="Malformed working hours",
            code="INVALID_WORKING_HOURS",
            details={"errors": errors}
        )

    return normalized


def normalize_blocked_dates(entries: list[BlockedDateInput]) -> list[BlockedDate]:
    """Validate partial blocks and fill defaults"""
    blocked = []
    for entry in entries:
        if not entry.all_day and entry.start_time and entry.end_time:
            if time_to_minutes(entry.start_time) >= time_to_minutes(entry.end_time):
                raise ValidationError(
                    message=f"Blocked window on {entry.date.isoformat()} must start before it ends",
                    code="INVALID_BLOCKED_DATE"
                )
        blocked.append(BlockedDate(
            date=entry.date,
            reason=entry.reason or "Unavailable",
            all_day=entry.all_day,
            start_time=entry.start_time if not entry.all_day else None,
            end_time=entry.end_time if not entry.all_day else None
        ))
    return blocked


class AvailabilityService:
    """Persists one availability profile per contractor"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def set_availability(
        self,
        contractor_id: str,
        data: AvailabilityUpdate
    ) -> AvailabilityProfile:
        """
        Replace a contractor's availability.

        The profile and its blocked dates live in one document, so the new
        blocked-date list replaces the old one in a single atomic write.

        Raises:
            ValidationError: malformed working hours, time zone or blocked dates
        """
        working_hours = validate_working_hours(data.working_hours)

        if not is_valid_zone(data.time_zone):
            raise ValidationError(
                message=f"Unknown time zone '{data.time_zone}'",
                code="INVALID_TIME_ZONE"
            )

        blocked_dates = normalize_blocked_dates(data.blocked_dates)

        now = utc_now()
        fields = {
            "contractor_id": contractor_id,
            "working_hours": working_hours,
            "time_zone": data.time_zone,
            "break_duration_minutes": data.break_duration_minutes,
            "max_jobs_per_day": data.max_jobs_per_day,
            "advance_booking_days": data.advance_booking_days,
            "emergency_available": data.emergency_available,
            "blocked_dates": [b.model_dump(mode="json") for b in blocked_dates],
            "updated_at": now,
        }

        await self._upsert(contractor_id, fields, now)

        logger.info(
            f"Availability updated for contractor {contractor_id} "
            f"({len(blocked_dates)} blocked dates)"
        )

        return await self.get_availability(contractor_id)

    async def get_availability(self, contractor_id: str) -> AvailabilityProfile:
        """
        Get a contractor's availability profile.

        Raises:
            NotFoundError: the contractor never configured availability
        """
        profile = await self.find_availability(contractor_id)
        if profile is None:
            raise NotFoundError("Availability", contractor_id)
        return profile

    async def find_availability(self, contractor_id: str) -> Optional[AvailabilityProfile]:
        """Get a contractor's availability profile, or None"""
        doc = await self._find(contractor_id)
        if not doc:
            return None
        return AvailabilityProfile(**doc)

    @retry()
    async def _find(self, contractor_id: str) -> Optional[dict]:
        return await self.db.contractor_availability.find_one({"contractor_id": contractor_id})

    @retry()
    async def _upsert(self, contractor_id: str, fields: dict, now) -> None:
        await self.db.contractor_availability.update_one(
            {"contractor_id": contractor_id},
            {
                "$set": fields,
                "$setOnInsert": {"created_at": now}
            },
            upsert=True
        )
