"""
Scheduling Service
Commits bookings, audits reschedules and fans out best-effort side effects
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_settings
from app.models.availability import AvailabilityProfile
from app.models.booking_ledger import ActiveBooking, BookingClaim
from app.models.common import utc_now
from app.models.notification import (
    NotificationCategory, NotificationChannel, RecipientRole, SchedulingNotification
)
from app.models.route_optimization import RouteOptimizationResult
from app.models.scheduled_job import (
    CALENDAR_STATUSES, INACTIVE_STATUSES, CalendarEntry,
    RescheduleJobRequest, RescheduleJobResult, RescheduleRecord, ScheduleJobRequest,
    ScheduleJobResult, ScheduledJob, ScheduledJobResponse, SchedulingStats, TimeWindow
)
from app.services.availability_service import AvailabilityService
from app.services.booking_ledger import BookingLedger, replace_claim
from app.services.booking_validator import BookingValidator
from app.services.calendar_service import CalendarService
from app.services.job_store import JobStore
from app.services.notification_service import NotificationService, get_notification_service
from app.services.route_optimizer import RouteOptimizer
from app.utils.exceptions import SchedulingException, ValidationError
from app.utils.retry import retry
from app.utils.time_utils import (
    hours_to_minutes, minutes_to_time_str, time_to_minutes, today_in_zone
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATS_PERIODS = {"week": 7, "month": 30}


def resolve_timing(
    start_time: str,
    end_time: Optional[str],
    duration_hours: Optional[float]
) -> tuple[str, float]:
    """
    End time and duration from whichever was supplied.

    Raises:
        ValidationError: inverted window, or end time and duration disagree
    """
    start = time_to_minutes(start_time)

    if end_time is not None:
        end = time_to_minutes(end_time)
        if end <= start:
            raise ValidationError(
                message="End time must be after start time",
                code="INVALID_TIME_RANGE"
            )
        if duration_hours is not None and hours_to_minutes(duration_hours) != end - start:
            raise ValidationError(
                message="End time and duration do not agree",
                code="TIMING_MISMATCH",
                details={"start_time": start_time, "end_time": end_time, "duration_hours": duration_hours}
            )
        return end_time, round((end - start) / 60, 4)

    end = start + hours_to_minutes(duration_hours)
    if end > 24 * 60:
        raise ValidationError(
            message="Booking must end on the same day",
            code="INVALID_TIME_RANGE"
        )
    return minutes_to_time_str(end), duration_hours


class SchedulingService:
    """
    Scheduler for contractor bookings.

    The commit itself goes through the day's booking ledger, so validation
    and write are one compare-and-swap step. Calendar export, notifications
    and route optimization run afterwards, bounded by timeouts, and their
    failures never undo a booking.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        notifications: Optional[NotificationService] = None,
        optimizer: Optional[RouteOptimizer] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.settings = get_settings()
        self.clock = clock or utc_now
        self.jobs = JobStore(db)
        self.availability = AvailabilityService(db)
        self.ledger = BookingLedger(db, self.jobs, clock=self.clock)
        self.validator = BookingValidator(db, ledger=self.ledger, clock=self.clock)
        self.calendar = CalendarService(db, clock=self.clock)
        self.notifications = notifications or get_notification_service()
        self.optimizer = optimizer or RouteOptimizer(
            db, notifications=self.notifications, ledger=self.ledger, clock=self.clock
        )

    # ============== Commit ==============

    async def _claim(
        self,
        profile: AvailabilityProfile,
        job: ScheduledJob,
        day: date,
        start_time: str,
        end_time: str,
        duration_hours: float
    ) -> None:
        """Validate and claim a window on the day's ledger (raises on rejection)"""
        claim = BookingClaim(
            job_id=job.job_id,
            start_time=start_time,
            end_time=end_time,
            title=job.title,
            claimed_at=self.clock()
        )

        def check_and_claim(claims: list[BookingClaim], bookings: list[ActiveBooking]) -> list[BookingClaim]:
            result = self.validator.evaluate(
                profile, day, start_time, duration_hours, bookings, exclude_job_id=job.job_id
            )
            result.raise_for_rejection()
            return replace_claim(claims, claim)

        await self.ledger.transact(profile.contractor_id, day, check_and_claim)

    async def _drop_claim(self, contractor_id: str, day: date, job_id: str) -> None:
        try:
            await self.ledger.release(contractor_id, day, job_id)
        except SchedulingException as e:
            # The stale claim is pruned on a later read
            logger.warning(f"Could not release claim of job {job_id} on {day}: {e.message}")

    async def schedule_job(self, job_id: str, data: ScheduleJobRequest) -> ScheduleJobResult:
        """
        Book a job with a contractor and mark it assigned.

        Raises:
            NotFoundError: unknown job or contractor without availability
            ValidationError: malformed timing or job not schedulable
            AvailabilityConflictError: rejected by an availability check
            PersistenceError: storage kept failing
        """
        job = await self.jobs.get(job_id)
        if job.is_active:
            raise ValidationError(
                message=f"Job {job_id} is already scheduled, reschedule it instead",
                code="JOB_ALREADY_SCHEDULED"
            )
        if job.status in INACTIVE_STATUSES:
            raise ValidationError(
                message=f"Job {job_id} is {job.status} and cannot be scheduled",
                code="JOB_NOT_SCHEDULABLE"
            )

        end_time, duration_hours = resolve_timing(data.start_time, data.end_time, data.duration_hours)
        profile = await self.availability.get_availability(data.contractor_id)

        await self._claim(profile, job, data.date, data.start_time, end_time, duration_hours)

        try:
            job = await self.jobs.assign(
                job_id=job_id,
                contractor_id=data.contractor_id,
                day=data.date,
                start_time=data.start_time,
                end_time=end_time,
                duration_hours=duration_hours,
                notes=data.notes,
                urgency=data.urgency.value
            )
        except SchedulingException:
            await self._drop_claim(data.contractor_id, data.date, job_id)
            raise

        logger.info(
            f"Job {job_id} scheduled with {data.contractor_id} on "
            f"{data.date.isoformat()} {data.start_time}-{end_time}"
        )

        calendar_event = await self._best_effort(
            "calendar export", self.calendar.export_job(job)
        )
        await self._best_effort(
            "schedule notifications", self._notify_scheduled(job)
        )
        route_result = await self._best_effort(
            "route optimization",
            self.optimizer.optimize_day(data.contractor_id, data.date),
            timeout=self.settings.ROUTE_OPTIMIZATION_TIMEOUT_SECONDS
        )

        if route_result is not None and route_result.accepted:
            # Every stop on the day may have moved
            for stop in route_result.stops:
                moved = await self.jobs.get(stop.job_id)
                event = await self._best_effort(
                    "calendar export", self.calendar.export_job(moved)
                )
                if stop.job_id == job_id:
                    job = moved
                    calendar_event = event or calendar_event

        return ScheduleJobResult(
            job=ScheduledJobResponse.model_validate(job),
            calendar_event=calendar_event,
            route_optimization=route_result
        )

    async def reschedule_job(self, job_id: str, data: RescheduleJobRequest) -> RescheduleJobResult:
        """
        Move an active job to a new window; its status is left as is.

        Raises:
            NotFoundError: unknown job
            ValidationError: job not active or inverted window
            AvailabilityConflictError: rejected by an availability check
        """
        job = await self.jobs.get(job_id)
        if not job.is_active or not job.is_scheduled or not job.contractor_id:
            raise ValidationError(
                message=f"Job {job_id} has no active booking to reschedule",
                code="JOB_NOT_ACTIVE"
            )

        start = time_to_minutes(data.new_start)
        end = time_to_minutes(data.new_end)
        if end <= start:
            raise ValidationError(
                message="New end time must be after new start time",
                code="INVALID_TIME_RANGE"
            )
        duration_hours = round((end - start) / 60, 4)

        profile = await self.availability.get_availability(job.contractor_id)
        await self._claim(profile, job, data.new_date, data.new_start, data.new_end, duration_hours)

        updated = await self.jobs.update_timing(
            job_id, data.new_date, data.new_start, data.new_end, duration_hours
        )

        if data.new_date != job.date:
            await self._drop_claim(job.contractor_id, job.date, job_id)

        record = RescheduleRecord(
            job_id=job_id,
            requested_by=data.requested_by,
            old=TimeWindow(date=job.date, start_time=job.start_time, end_time=job.end_time),
            new=TimeWindow(date=data.new_date, start_time=data.new_start, end_time=data.new_end),
            reason=data.reason
        )
        await self._append_history(record)

        logger.info(
            f"Job {job_id} rescheduled {job.date.isoformat()} {job.start_time} -> "
            f"{data.new_date.isoformat()} {data.new_start} by {data.requested_by}"
        )

        calendar_event = await self._best_effort(
            "calendar export", self.calendar.export_job(updated)
        )
        await self._best_effort(
            "reschedule notification", self._notify_rescheduled(job, updated, data.requested_by)
        )

        return RescheduleJobResult(
            job=ScheduledJobResponse.model_validate(updated),
            reschedule=record,
            calendar_event=calendar_event
        )

    # ============== Queries ==============

    async def get_contractor_calendar(
        self,
        contractor_id: str,
        start: date,
        end: date
    ) -> list[CalendarEntry]:
        """Assigned, in-progress and completed jobs in a date range"""
        if end < start:
            raise ValidationError(
                message="End date must not be before start date",
                code="INVALID_DATE_RANGE"
            )

        jobs = await self.jobs.find_in_range(contractor_id, start, end, CALENDAR_STATUSES)
        return [
            CalendarEntry(
                job_id=job.job_id,
                title=job.title,
                date=job.date,
                start_time=job.start_time,
                end_time=job.end_time,
                status=job.status,
                address=job.address,
                customer_id=job.customer_id,
                notes=job.notes
            )
            for job in jobs
            if job.is_scheduled
        ]

    async def get_scheduling_stats(self, contractor_id: str, period: str = "month") -> SchedulingStats:
        """Job counts over the last 7 (week) or 30 (month) days"""
        if period not in STATS_PERIODS:
            raise ValidationError(
                message=f"Period must be one of {', '.join(STATS_PERIODS)}",
                code="INVALID_PERIOD"
            )

        profile = await self.availability.find_availability(contractor_id)
        today = today_in_zone(profile.time_zone if profile else "UTC", self.clock())
        since = today - timedelta(days=STATS_PERIODS[period])

        jobs = await self.jobs.find_in_range(
            contractor_id, since, date.max, CALENDAR_STATUSES + ["cancelled"]
        )

        durations = [j.duration_minutes / 60 for j in jobs if j.start_time and j.end_time]

        return SchedulingStats(
            contractor_id=contractor_id,
            period=period,
            since=since,
            total_jobs=len(jobs),
            completed_jobs=sum(1 for j in jobs if j.status == "completed"),
            cancelled_jobs=sum(1 for j in jobs if j.status == "cancelled"),
            avg_job_duration_hours=round(sum(durations) / len(durations), 2) if durations else None,
            working_days=len({j.date for j in jobs if j.date})
        )

    async def get_reschedule_history(self, job_id: str) -> list[RescheduleRecord]:
        """Reschedule records of a job, oldest first"""
        await self.jobs.get(job_id)
        docs = await self._find_history(job_id)
        return [RescheduleRecord(**doc) for doc in docs]

    async def optimize_route(self, contractor_id: str, day: date) -> RouteOptimizationResult:
        """Manually trigger route optimization for a contractor's day"""
        await self.availability.get_availability(contractor_id)
        return await self.optimizer.optimize_day(contractor_id, day)

    # ============== Persistence ==============

    @retry()
    async def _append_history(self, record: RescheduleRecord) -> None:
        await self.db.job_reschedule_history.insert_one(record.model_dump(mode="json"))

    @retry()
    async def _find_history(self, job_id: str) -> list[dict]:
        return await self.db.job_reschedule_history.find(
            {"job_id": job_id}
        ).sort("timestamp", 1).to_list(length=500)

    # ============== Side effects ==============

    async def _best_effort(
        self,
        label: str,
        operation: Awaitable[T],
        timeout: Optional[float] = None
    ) -> Optional[T]:
        """Await a side effect; timeouts and failures are logged, never raised"""
        try:
            return await asyncio.wait_for(
                operation, timeout=timeout or self.settings.SIDE_EFFECT_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning(f"{label} timed out")
        except Exception as e:
            logger.error(f"{label} failed: {e}", exc_info=True)
        return None

    async def _notify_scheduled(self, job: ScheduledJob) -> None:
        outgoing = []
        if job.customer_id:
            outgoing.append(self._notification(
                job, NotificationCategory.JOB_SCHEDULED, job.customer_id, RecipientRole.CUSTOMER,
                [NotificationChannel.PUSH, NotificationChannel.EMAIL]
            ))
        if job.contractor_id:
            outgoing.append(self._notification(
                job, NotificationCategory.JOB_SCHEDULED, job.contractor_id, RecipientRole.CONTRACTOR,
                [NotificationChannel.PUSH]
            ))

        for notification in outgoing:
            await self.notifications.send_multi_channel(notification)

    async def _notify_rescheduled(self, before: ScheduledJob, after: ScheduledJob, requested_by: str) -> None:
        """Tell the party that did not ask for the change"""
        if requested_by == after.customer_id:
            requester, recipient_id, recipient_role = (
                RecipientRole.CUSTOMER, after.contractor_id, RecipientRole.CONTRACTOR
            )
        else:
            requester, recipient_id, recipient_role = (
                RecipientRole.CONTRACTOR, after.customer_id, RecipientRole.CUSTOMER
            )

        if not recipient_id:
            logger.info(f"No {recipient_role.value} to notify for job {after.job_id}")
            return

        notification = self._notification(
            after, NotificationCategory.JOB_RESCHEDULED, recipient_id, recipient_role,
            [NotificationChannel.PUSH, NotificationChannel.SMS]
        )
        notification.requested_by_role = requester
        notification.previous_date = before.date
        notification.previous_start_time = before.start_time
        await self.notifications.send_multi_channel(notification)

    def _notification(
        self,
        job: ScheduledJob,
        category: NotificationCategory,
        recipient_id: str,
        recipient_role: RecipientRole,
        channels: list[NotificationChannel]
    ) -> SchedulingNotification:
        return SchedulingNotification(
            category=category,
            recipient_id=recipient_id,
            recipient_role=recipient_role,
            channels=channels,
            job_id=job.job_id,
            job_title=job.title,
            date=job.date,
            start_time=job.start_time,
            end_time=job.end_time
        )
