"""
Calendar Service
iCalendar export of scheduled jobs
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_settings
from app.models.common import utc_now
from app.models.scheduled_job import CalendarEvent, ScheduledJob
from app.services.availability_service import AvailabilityService
from app.utils.exceptions import ValidationError
from app.utils.retry import retry
from app.utils.time_utils import get_zone, localize, time_to_minutes

logger = logging.getLogger(__name__)

DEFAULT_TIME_ZONE = "UTC"
MAX_LINE_OCTETS = 75


@dataclass
class CalendarEventData:
    """Everything a VEVENT needs, already resolved from the job"""
    uid: str
    summary: str
    start: datetime  # contractor-local, aware
    end: datetime
    time_zone: str
    location: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None


def escape_text(value: str) -> str:
    """Escape a TEXT property value"""
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def fold_line(line: str) -> str:
    """Fold a content line at 75 octets without splitting UTF-8 sequences"""
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return line

    parts = []
    current = ""
    size = 0
    limit = MAX_LINE_OCTETS
    for char in line:
        char_size = len(char.encode("utf-8"))
        if size + char_size > limit:
            parts.append(current)
            current = ""
            size = 0
            # continuation lines start with a space
            limit = MAX_LINE_OCTETS - 1
        current += char
        size += char_size
    parts.append(current)
    return "\r\n ".join(parts)


def format_local(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%S")


def format_utc(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%SZ")


def format_offset(offset: timedelta) -> str:
    """UTC offset as +HHMM / -HHMM"""
    minutes = int(offset.total_seconds() // 60)
    sign = "-" if minutes < 0 else "+"
    return f"{sign}{abs(minutes) // 60:02d}{abs(minutes) % 60:02d}"


def _offset_changes(tz_name: str, year: int) -> list[datetime]:
    """UTC instants within a year at which the zone's offset changes"""
    zone = get_zone(tz_name)

    def offset_at(moment: datetime) -> timedelta:
        return moment.astimezone(zone).utcoffset()

    changes = []
    moment = datetime(year, 1, 1, tzinfo=timezone.utc)
    year_end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    while moment < year_end:
        step = min(moment + timedelta(days=1), year_end)
        if offset_at(moment) != offset_at(step):
            low, high = moment, step
            while high - low > timedelta(minutes=1):
                middle = low + (high - low) / 2
                if offset_at(middle) == offset_at(low):
                    low = middle
                else:
                    high = middle
            changes.append(high.replace(second=0, microsecond=0))
        moment = step
    return changes


def timezone_component(tz_name: str, year: int) -> list[str]:
    """
    VTIMEZONE lines for every TZID used in the calendar.

    Covers the given year: the observance in force on 1 January plus one
    observance per offset change during the year.
    """
    zone = get_zone(tz_name)
    lines = ["BEGIN:VTIMEZONE", f"TZID:{tz_name}"]

    year_start = localize(date(year, 1, 1), 0, tz_name)
    observances = [(year_start, year_start.utcoffset())]
    for change in _offset_changes(tz_name, year):
        before = (change - timedelta(minutes=1)).astimezone(zone).utcoffset()
        observances.append((change.astimezone(zone), before))

    for local, offset_from in observances:
        kind = "DAYLIGHT" if local.dst() else "STANDARD"
        # Observance DTSTART is wall-clock time in the offset being left
        wall_clock = local.astimezone(timezone.utc).replace(tzinfo=None) + offset_from
        lines += [
            f"BEGIN:{kind}",
            f"DTSTART:{format_local(wall_clock)}",
            f"TZOFFSETFROM:{format_offset(offset_from)}",
            f"TZOFFSETTO:{format_offset(local.utcoffset())}",
            f"TZNAME:{local.tzname()}",
            f"END:{kind}",
        ]

    lines.append("END:VTIMEZONE")
    return lines


class CalendarService:
    """Builds, stores and renders per-job calendar events"""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.clock = clock or utc_now
        self.settings = get_settings()
        self.availability = AvailabilityService(db)

    def event_uid(self, job_id: str) -> str:
        """Stable UID so re-exports update the same event"""
        return f"{job_id}@{self.settings.CALENDAR_DOMAIN}"

    def ics_url(self, job_id: str) -> str:
        return f"{self.settings.PUBLIC_BASE_URL}{self.settings.API_V1_PREFIX}/calendar/job/{job_id}.ics"

    def build_event_data(self, job: ScheduledJob, time_zone: str) -> CalendarEventData:
        """
        Resolve a scheduled job into event data.

        Raises:
            ValidationError: the job has no date or time window
        """
        if not job.is_scheduled:
            raise ValidationError(
                message=f"Job {job.job_id} is not scheduled",
                code="JOB_NOT_SCHEDULED"
            )

        summary = job.title or f"Job {job.job_id}"
        lines = [f"Job: {summary}"]
        if job.address:
            lines.append(f"Address: {job.address}")
        lines.append(f"Notes: {job.notes or 'No additional notes'}")
        lines.append(f"Job #{job.job_id}")

        return CalendarEventData(
            uid=self.event_uid(job.job_id),
            summary=summary,
            start=localize(job.date, time_to_minutes(job.start_time), time_zone),
            end=localize(job.date, time_to_minutes(job.end_time), time_zone),
            time_zone=time_zone,
            location=job.address,
            description="\n".join(lines),
            url=f"{self.settings.PUBLIC_BASE_URL}/jobs/{job.job_id}"
        )

    def render_ics(self, event: CalendarEventData) -> str:
        """Render a VCALENDAR holding a single VEVENT"""
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:{self.settings.CALENDAR_PRODUCT_ID}",
            "CALSCALE:GREGORIAN",
            "METHOD:PUBLISH",
            *timezone_component(event.time_zone, event.start.year),
            "BEGIN:VEVENT",
            f"UID:{event.uid}",
            f"DTSTAMP:{format_utc(self.clock())}",
            f"DTSTART;TZID={event.time_zone}:{format_local(event.start)}",
            f"DTEND;TZID={event.time_zone}:{format_local(event.end)}",
            f"SUMMARY:{escape_text(event.summary)}",
        ]
        if event.location:
            lines.append(f"LOCATION:{escape_text(event.location)}")
        if event.description:
            lines.append(f"DESCRIPTION:{escape_text(event.description)}")
        if event.url:
            lines.append(f"URL:{event.url}")
        lines += ["END:VEVENT", "END:VCALENDAR"]

        return "\r\n".join(fold_line(line) for line in lines) + "\r\n"

    async def time_zone_for(self, contractor_id: Optional[str]) -> str:
        """Contractor's zone, UTC when no profile exists"""
        if not contractor_id:
            return DEFAULT_TIME_ZONE
        profile = await self.availability.find_availability(contractor_id)
        return profile.time_zone if profile else DEFAULT_TIME_ZONE

    async def render_for_job(self, job: ScheduledJob) -> str:
        """iCalendar text from the job's current state"""
        time_zone = await self.time_zone_for(job.contractor_id)
        return self.render_ics(self.build_event_data(job, time_zone))

    async def export_job(self, job: ScheduledJob) -> CalendarEvent:
        """Render and store the job's event, replacing any earlier export"""
        calendar_data = await self.render_for_job(job)
        event = CalendarEvent(
            event_uid=self.event_uid(job.job_id),
            calendar_data=calendar_data,
            ics_url=self.ics_url(job.job_id)
        )
        await self._save(job.job_id, event)
        logger.info(f"Calendar event exported for job {job.job_id}")
        return event

    @retry()
    async def _save(self, job_id: str, event: CalendarEvent) -> None:
        now = utc_now()
        await self.db.job_calendar_events.update_one(
            {"job_id": job_id},
            {
                "$set": {
                    "job_id": job_id,
                    "event_uid": event.event_uid,
                    "calendar_data": event.calendar_data,
                    "updated_at": now
                },
                "$setOnInsert": {"created_at": now}
            },
            upsert=True
        )
