"""
Booking Ledger Service
Storage-level exclusion for a contractor's day

Every change to a day's bookings goes through one document per
(contractor, date). Writers read the document with its version, validate
against the claims it holds, and write back only if the version is still the
one they read (or, for the first claim of a day, by inserting under a unique
key). Two concurrent commits for the same day therefore cannot both succeed;
the loser re-reads and re-validates.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from app.config import get_settings
from app.models.booking_ledger import ActiveBooking, BookingClaim, DayLedger, ledger_key
from app.models.common import utc_now
from app.models.scheduled_job import INACTIVE_STATUSES, ScheduledJob
from app.services.job_store import JobStore
from app.utils.exceptions import PersistenceError
from app.utils.retry import retry
from app.utils.time_utils import time_to_minutes

logger = logging.getLogger(__name__)

# mutate(claims, bookings) -> new claims, or None when nothing needs writing
ClaimMutation = Callable[[list[BookingClaim], list[ActiveBooking]], Optional[list[BookingClaim]]]


def _as_aware(value: datetime) -> datetime:
    # Motor hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def booking_from_claim(claim: BookingClaim) -> ActiveBooking:
    return ActiveBooking(
        job_id=claim.job_id,
        start=time_to_minutes(claim.start_time),
        end=time_to_minutes(claim.end_time),
        title=claim.title
    )


def booking_from_job(job: ScheduledJob) -> ActiveBooking:
    return ActiveBooking(
        job_id=job.job_id,
        start=time_to_minutes(job.start_time),
        end=time_to_minutes(job.end_time),
        title=job.title
    )


def claim_from_job(job: ScheduledJob, now: Optional[datetime] = None) -> BookingClaim:
    return BookingClaim(
        job_id=job.job_id,
        start_time=job.start_time,
        end_time=job.end_time,
        title=job.title,
        claimed_at=now or utc_now()
    )


def replace_claim(claims: list[BookingClaim], claim: BookingClaim) -> list[BookingClaim]:
    """Claims with the job's previous claim swapped for a new one"""
    return [c for c in claims if c.job_id != claim.job_id] + [claim]


class BookingLedger:
    """Compare-and-swap access to per-day booking claims"""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        job_store: Optional[JobStore] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.job_store = job_store or JobStore(db)
        self.clock = clock or utc_now
        self.settings = get_settings()

    @retry()
    async def load(self, contractor_id: str, day: date) -> DayLedger:
        """Read a day's ledger (an empty, unsaved ledger when none exists)"""
        key = ledger_key(contractor_id, day)
        doc = await self.db.booking_ledgers.find_one({"ledger_key": key})
        if not doc:
            return DayLedger(ledger_key=key, contractor_id=contractor_id, date=day)

        ledger = DayLedger(**doc)
        ledger.exists = True
        return ledger

    @retry()
    async def commit(self, ledger: DayLedger, claims: list[BookingClaim]) -> bool:
        """
        Write claims if the ledger is unchanged since it was read.

        Returns:
            False when another writer got there first
        """
        now = self.clock()
        claim_docs = [c.model_dump() for c in claims]

        if not ledger.exists:
            try:
                await self.db.booking_ledgers.insert_one({
                    "ledger_key": ledger.ledger_key,
                    "contractor_id": ledger.contractor_id,
                    "date": ledger.date.isoformat(),
                    "version": 1,
                    "claims": claim_docs,
                    "created_at": now,
                    "updated_at": now
                })
            except DuplicateKeyError:
                return False
            return True

        result = await self.db.booking_ledgers.update_one(
            {"ledger_key": ledger.ledger_key, "version": ledger.version},
            {
                "$set": {"claims": claim_docs, "updated_at": now},
                "$inc": {"version": 1}
            }
        )
        return result.matched_count == 1

    async def reconcile(
        self,
        ledger: DayLedger,
        active_jobs: list[ScheduledJob]
    ) -> list[BookingClaim]:
        """
        Bring a ledger's claims in line with the jobs they stand for.

        - claims of completed/cancelled jobs are dropped
        - claims that no longer match their job (moved, or a commit that never
          finished) are dropped once older than the grace period
        - active jobs on the day without a claim get one
        """
        now = self.clock()
        grace = timedelta(seconds=self.settings.CLAIM_GRACE_SECONDS)
        active_by_id = {job.job_id: job for job in active_jobs}

        unknown_ids = [c.job_id for c in ledger.claims if c.job_id not in active_by_id]
        others = {job.job_id: job for job in await self.job_store.find_many(unknown_ids)}

        kept = []
        for claim in ledger.claims:
            job = active_by_id.get(claim.job_id) or others.get(claim.job_id)

            if job is not None and job.status in INACTIVE_STATUSES:
                logger.debug(f"Pruning claim of {job.status} job {claim.job_id}")
                continue

            matches = (
                claim.job_id in active_by_id
                and job.start_time == claim.start_time
                and job.end_time == claim.end_time
            )
            if not matches and now - _as_aware(claim.claimed_at) > grace:
                logger.info(
                    f"Pruning stale claim of job {claim.job_id} on {ledger.ledger_key}"
                )
                continue

            kept.append(claim)

        claimed = {c.job_id for c in kept}
        for job in active_jobs:
            if job.job_id not in claimed and job.start_time and job.end_time:
                kept.append(claim_from_job(job, now))

        return kept

    @staticmethod
    def bookings_from(
        claims: list[BookingClaim],
        active_jobs: list[ScheduledJob]
    ) -> list[ActiveBooking]:
        """Occupied intervals: every claim plus any job whose stored window differs from its claim"""
        bookings = [booking_from_claim(c) for c in claims]
        by_job = {c.job_id: c for c in claims}

        for job in active_jobs:
            if not (job.start_time and job.end_time):
                continue
            claim = by_job.get(job.job_id)
            if claim is None or (claim.start_time, claim.end_time) != (job.start_time, job.end_time):
                bookings.append(booking_from_job(job))

        return sorted(bookings, key=lambda b: (b.start, b.end))

    async def snapshot(
        self,
        contractor_id: str,
        day: date
    ) -> tuple[DayLedger, list[BookingClaim], list[ActiveBooking], list[ScheduledJob]]:
        """Ledger, reconciled claims, occupied intervals and active jobs for a day"""
        ledger = await self.load(contractor_id, day)
        active_jobs = await self.job_store.find_active_for_day(contractor_id, day)
        claims = await self.reconcile(ledger, active_jobs)
        return ledger, claims, self.bookings_from(claims, active_jobs), active_jobs

    async def transact(
        self,
        contractor_id: str,
        day: date,
        mutate: ClaimMutation,
        max_attempts: Optional[int] = None
    ) -> Optional[list[BookingClaim]]:
        """
        Read-validate-write a day's claims.

        mutate receives the reconciled claims and occupied intervals and either
        returns the new claim list, returns None (nothing to write), or raises
        to abort. On a lost race the whole cycle is repeated.

        Returns:
            The committed claims, or None if mutate asked for no write

        Raises:
            PersistenceError: still losing the race after max_attempts
        """
        attempts = max_attempts or self.settings.COMMIT_MAX_ATTEMPTS

        for attempt in range(attempts):
            ledger, claims, bookings, _ = await self.snapshot(contractor_id, day)

            new_claims = mutate(claims, bookings)
            if new_claims is None:
                return None

            if await self.commit(ledger, new_claims):
                return new_claims

            logger.info(
                f"Concurrent update on {ledger.ledger_key} "
                f"(attempt {attempt + 1}/{attempts}), re-validating"
            )

        raise PersistenceError(f"ledger:{ledger_key(contractor_id, day)}")

    async def release(self, contractor_id: str, day: date, job_id: str) -> None:
        """Drop a job's claim on a day"""

        def drop(claims: list[BookingClaim], _bookings) -> Optional[list[BookingClaim]]:
            if not any(c.job_id == job_id for c in claims):
                return None
            return [c for c in claims if c.job_id != job_id]

        await self.transact(contractor_id, day, drop)
