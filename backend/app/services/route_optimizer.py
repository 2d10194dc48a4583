"""
Route Optimizer
Reorders a contractor's day when the routing service finds a clearly shorter route
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Callable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_settings
from app.models.availability import AvailabilityProfile
from app.models.booking_ledger import ActiveBooking, BookingClaim
from app.models.common import utc_now
from app.models.notification import (
    NotificationCategory, NotificationChannel, RecipientRole, SchedulingNotification
)
from app.models.route_optimization import (
    OptimizedRoute, RouteDestination, RouteOptimizationResult, RoutePoint, RouteStop
)
from app.models.scheduled_job import ScheduledJob
from app.services.availability_service import AvailabilityService
from app.services.booking_ledger import BookingLedger, claim_from_job
from app.services.job_store import JobStore
from app.services.notification_service import NotificationService, get_notification_service
from app.services.routing import RoutingService
from app.services.schedule_lock import LockNotAcquired, ScheduleLock
from app.utils.exceptions import ExternalServiceError, PersistenceError, SchedulingException
from app.utils.time_utils import MINUTES_PER_DAY, minutes_to_time_str, time_to_minutes

logger = logging.getLogger(__name__)


class RewriteAborted(Exception):
    """The day changed or the rewrite would collide; leave it untouched"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def route_lock_key(contractor_id: str, day: date) -> str:
    return f"route:{contractor_id}:{day.isoformat()}"


def _duration_hours(job: ScheduledJob) -> float:
    return job.duration_hours if job.duration_hours is not None else job.duration_minutes / 60


class RouteOptimizer:
    """
    Route optimization for one contractor's day.

    Decision:
    - naive total = (stops - 1) * travel buffer + sum of job durations
    - accepted only if the routing service's total is below
      ROUTE_IMPROVEMENT_THRESHOLD * naive total
    - accepted routes are rewritten back to back from ROUTE_DAY_START
    - the rewrite must stay inside the day and its working hours

    Runs under a shared lease lock per (contractor, date).
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        routing: Optional[RoutingService] = None,
        notifications: Optional[NotificationService] = None,
        ledger: Optional[BookingLedger] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.settings = get_settings()
        self.jobs = JobStore(db)
        self.availability = AvailabilityService(db)
        self.routing = routing or RoutingService(db)
        self.notifications = notifications or get_notification_service()
        self.clock = clock or utc_now
        self.ledger = ledger or BookingLedger(db, self.jobs, clock=self.clock)

    async def optimize_day(self, contractor_id: str, day: date) -> RouteOptimizationResult:
        """
        Try to reorder a contractor's day.

        Routing failures, lock contention and concurrent edits leave the day
        untouched and are reported in the result's reason.
        """
        try:
            async with ScheduleLock(self.db, route_lock_key(contractor_id, day)):
                return await self._optimize(contractor_id, day)
        except LockNotAcquired:
            logger.warning(f"Route optimization for {contractor_id} on {day} already running")
            return RouteOptimizationResult(
                contractor_id=contractor_id, date=day, reason="optimization_in_progress"
            )

    async def _optimize(self, contractor_id: str, day: date) -> RouteOptimizationResult:
        result = RouteOptimizationResult(contractor_id=contractor_id, date=day)

        jobs = await self.jobs.find_active_for_day(contractor_id, day)
        stops = [j for j in jobs if j.coordinates is not None and j.is_scheduled]
        stops.sort(key=lambda j: time_to_minutes(j.start_time))
        result.original_order = [j.job_id for j in stops]

        if len(stops) < 2:
            result.reason = "not_enough_stops"
            return result

        buffer = self.settings.ROUTE_TRAVEL_BUFFER_MINUTES
        naive_total = (len(stops) - 1) * buffer + sum(j.duration_minutes for j in stops)
        result.naive_total_minutes = naive_total

        try:
            route = await self._request_route(contractor_id, stops)
        except ExternalServiceError as e:
            logger.warning(f"Routing failed for {contractor_id} on {day}: {e.message}")
            result.reason = "routing_unavailable"
            return result

        if sorted(route.optimized_order) != list(range(len(stops))):
            logger.warning(f"Routing returned an invalid order for {contractor_id} on {day}")
            result.reason = "invalid_route"
            return result

        optimized_total = route.total_duration_seconds / 60
        ordered = [stops[i] for i in route.optimized_order]
        result.optimized_order = [j.job_id for j in ordered]
        result.optimized_total_minutes = round(optimized_total, 1)
        result.estimated_time_savings_minutes = round(naive_total - optimized_total, 1)

        if not optimized_total < self.settings.ROUTE_IMPROVEMENT_THRESHOLD * naive_total:
            logger.info(
                f"Route for {contractor_id} on {day} not improved enough "
                f"({optimized_total:.0f} vs {naive_total} min)"
            )
            result.reason = "insufficient_improvement"
            return result

        result.stops = self._rewrite(ordered, route)
        if time_to_minutes(result.stops[-1].end_time) > MINUTES_PER_DAY or any(
            time_to_minutes(s.end_time) <= time_to_minutes(s.start_time) for s in result.stops
        ):
            result.reason = "exceeds_day"
            return result

        profile = await self.availability.find_availability(contractor_id)
        if not self._within_hours(profile, day, result.stops):
            logger.info(f"Route rewrite for {contractor_id} on {day} leaves working hours")
            result.reason = "outside_hours"
            return result

        try:
            await self._commit(contractor_id, day, stops, result.stops)
        except RewriteAborted as e:
            logger.info(f"Route rewrite for {contractor_id} on {day} aborted: {e.reason}")
            result.reason = e.reason
            return result
        except PersistenceError:
            logger.info(f"Route rewrite for {contractor_id} on {day} lost a concurrent update")
            result.reason = "concurrent_update"
            return result

        # Runs to completion (or rollback) even if the caller times out
        try:
            await asyncio.shield(self._apply(contractor_id, day, stops, result.stops))
        except SchedulingException:
            result.reason = "rewrite_failed"
            return result

        by_id = {j.job_id: j for j in stops}
        result.accepted = True
        logger.info(
            f"Route for {contractor_id} on {day} optimized: "
            f"{result.estimated_time_savings_minutes} min saved"
        )

        await self._notify(contractor_id, day, by_id, result.stops)
        return result

    async def _request_route(self, contractor_id: str, stops: list[ScheduledJob]) -> OptimizedRoute:
        origin = await self.routing.get_contractor_location(contractor_id)
        if origin is None:
            first = stops[0].coordinates
            origin = RoutePoint(lat=first.lat, lng=first.lng)

        destinations = [
            RouteDestination(
                job_id=j.job_id,
                lat=j.coordinates.lat,
                lng=j.coordinates.lng,
                duration_hours=j.duration_minutes / 60,
                scheduled_time=j.start_time
            )
            for j in stops
        ]
        return await self.routing.get_optimized_route(origin, destinations)

    def _rewrite(self, ordered: list[ScheduledJob], route: OptimizedRoute) -> list[RouteStop]:
        """Back-to-back windows from the day-start anchor"""
        use_legs = self.settings.ROUTE_USE_LEG_DURATIONS and len(route.legs) >= len(ordered)
        current = time_to_minutes(self.settings.ROUTE_DAY_START)

        stops = []
        for position, job in enumerate(ordered):
            travel = 0
            if position > 0:
                if use_legs:
                    travel = round(route.legs[position].duration_seconds / 60)
                else:
                    travel = self.settings.ROUTE_TRAVEL_BUFFER_MINUTES
            start = current + travel
            end = start + job.duration_minutes
            stops.append(RouteStop(
                order=position + 1,
                job_id=job.job_id,
                start_time=minutes_to_time_str(start),
                end_time=minutes_to_time_str(end),
                travel_from_previous_minutes=travel
            ))
            current = end
        return stops

    @staticmethod
    def _within_hours(profile: Optional[AvailabilityProfile], day: date, stops: list[RouteStop]) -> bool:
        """Every rewritten window inside the day's working hours (no profile, no limit)"""
        if profile is None:
            return True
        hours = profile.hours_for(day)
        if not (hours.enabled and hours.start and hours.end):
            return True
        opens, closes = time_to_minutes(hours.start), time_to_minutes(hours.end)
        return all(
            opens <= time_to_minutes(s.start_time) and time_to_minutes(s.end_time) <= closes
            for s in stops
        )

    async def _commit(
        self,
        contractor_id: str,
        day: date,
        original: list[ScheduledJob],
        stops: list[RouteStop]
    ) -> None:
        """
        Claim the new windows in one compare-and-swap; never retried.

        The old windows stay claimed alongside them until _apply settles the
        day, so neither set can be booked by someone else in between.
        """
        claimed_at = self.clock()
        route_ids = {j.job_id for j in original}
        expected = {
            j.job_id: (time_to_minutes(j.start_time), time_to_minutes(j.end_time))
            for j in original
        }

        def rewrite(claims: list[BookingClaim], bookings: list[ActiveBooking]) -> list[BookingClaim]:
            current = {}
            for booking in bookings:
                if booking.job_id in route_ids:
                    current.setdefault(booking.job_id, []).append((booking.start, booking.end))

            for job_id, window in expected.items():
                if current.get(job_id) != [window]:
                    raise RewriteAborted("day_changed")

            others = [b for b in bookings if b.job_id not in route_ids]
            for stop in stops:
                start, end = time_to_minutes(stop.start_time), time_to_minutes(stop.end_time)
                for booking in others:
                    if booking.overlaps(start, end):
                        raise RewriteAborted("overlaps_unrouted_job")

            titles = {c.job_id: c.title for c in claims}
            kept = [c for c in claims if c.job_id not in route_ids]
            held = [claim_from_job(j, claimed_at) for j in original]
            return kept + held + [
                BookingClaim(
                    job_id=stop.job_id,
                    start_time=stop.start_time,
                    end_time=stop.end_time,
                    title=titles.get(stop.job_id),
                    claimed_at=claimed_at
                )
                for stop in stops
            ]

        await self.ledger.transact(contractor_id, day, rewrite, max_attempts=1)

    async def _apply(
        self,
        contractor_id: str,
        day: date,
        original: list[ScheduledJob],
        stops: list[RouteStop]
    ) -> None:
        """Move every routed job to its new window, or put back the ones already moved"""
        by_id = {j.job_id: j for j in original}
        moved: list[ScheduledJob] = []
        try:
            for stop in stops:
                job = by_id[stop.job_id]
                await self.jobs.update_timing(
                    stop.job_id, day, stop.start_time, stop.end_time, _duration_hours(job)
                )
                moved.append(job)
        except SchedulingException as e:
            logger.error(
                f"Route rewrite for {contractor_id} on {day} failed after "
                f"{len(moved)} of {len(stops)} jobs, rolling back: {e.message}"
            )
            await self._roll_back(contractor_id, day, original, moved)
            raise

        await self._settle_claims(contractor_id, day, {s.job_id: (s.start_time, s.end_time) for s in stops})

    async def _roll_back(
        self,
        contractor_id: str,
        day: date,
        original: list[ScheduledJob],
        moved: list[ScheduledJob]
    ) -> None:
        for job in moved:
            try:
                await self.jobs.update_timing(
                    job.job_id, day, job.start_time, job.end_time, _duration_hours(job)
                )
            except SchedulingException as e:
                # Its new window stays claimed, so the day still has no overlap
                logger.error(f"Could not restore job {job.job_id} to {job.start_time}: {e.message}")

        await self._settle_claims(
            contractor_id, day, {j.job_id: (j.start_time, j.end_time) for j in original}
        )

    async def _settle_claims(
        self,
        contractor_id: str,
        day: date,
        windows: dict[str, tuple[str, str]]
    ) -> None:
        """Keep one claim per routed job, the one matching the given window"""

        def settle(claims: list[BookingClaim], _bookings) -> Optional[list[BookingClaim]]:
            kept = [
                c for c in claims
                if c.job_id not in windows or (c.start_time, c.end_time) == windows[c.job_id]
            ]
            return kept if len(kept) != len(claims) else None

        try:
            await self.ledger.transact(contractor_id, day, settle)
        except PersistenceError:
            # Extra claims only over-reserve the day; they lapse after the grace period
            logger.warning(f"Could not settle route claims for {contractor_id} on {day}")

    async def _notify(
        self,
        contractor_id: str,
        day: date,
        jobs: dict[str, ScheduledJob],
        stops: list[RouteStop]
    ) -> None:
        changed = [
            s for s in stops
            if (jobs[s.job_id].start_time, jobs[s.job_id].end_time) != (s.start_time, s.end_time)
        ]
        if not changed:
            return

        first = stops[0]
        outgoing = [SchedulingNotification(
            category=NotificationCategory.SCHEDULE_OPTIMIZED,
            recipient_id=contractor_id,
            recipient_role=RecipientRole.CONTRACTOR,
            channels=[NotificationChannel.PUSH],
            job_id=first.job_id,
            job_title=jobs[first.job_id].title,
            date=day,
            start_time=first.start_time,
            end_time=stops[-1].end_time
        )]

        for stop in changed:
            job = jobs[stop.job_id]
            if not job.customer_id:
                continue
            outgoing.append(SchedulingNotification(
                category=NotificationCategory.SCHEDULE_OPTIMIZED,
                recipient_id=job.customer_id,
                recipient_role=RecipientRole.CUSTOMER,
                channels=[NotificationChannel.PUSH],
                job_id=job.job_id,
                job_title=job.title,
                date=day,
                start_time=stop.start_time,
                end_time=stop.end_time,
                previous_date=day,
                previous_start_time=job.start_time
            ))

        for notification in outgoing:
            try:
                await self.notifications.send_multi_channel(notification)
            except Exception as e:
                logger.error(f"Failed to send route notification to {notification.recipient_id}: {e}")
