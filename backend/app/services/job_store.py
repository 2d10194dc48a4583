"""
Scheduled Job Store
Reads and writes the timing projection of job documents
"""

import logging
from datetime import date
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from app.models.common import utc_now
from app.models.scheduled_job import ACTIVE_STATUSES, JobStatus, ScheduledJob
from app.utils.exceptions import NotFoundError
from app.utils.retry import retry

logger = logging.getLogger(__name__)


class JobStore:
    """
    Job collection access for the scheduling engine

    Provides:
    - Lookups by job ID
    - Active-job queries per contractor and day (the conflict set)
    - Timing writes; lifecycle statuses other than "assigned" are never written here
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection: AsyncIOMotorCollection = db.jobs

    async def get(self, job_id: str) -> ScheduledJob:
        """
        Get job by ID

        Raises:
            NotFoundError: unknown job
        """
        job = await self.find(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    @retry()
    async def find(self, job_id: str) -> Optional[ScheduledJob]:
        """Get job by ID or None"""
        doc = await self.collection.find_one({"job_id": job_id})
        return ScheduledJob(**doc) if doc else None

    @retry()
    async def find_many(self, job_ids: list[str]) -> list[ScheduledJob]:
        """Get several jobs by ID"""
        if not job_ids:
            return []
        docs = await self.collection.find(
            {"job_id": {"$in": job_ids}}
        ).to_list(length=len(job_ids))
        return [ScheduledJob(**doc) for doc in docs]

    async def find_active_for_day(self, contractor_id: str, day: date) -> list[ScheduledJob]:
        """Active jobs for a contractor on a date, ordered by start time"""
        return await self.find_in_range(contractor_id, day, day, ACTIVE_STATUSES)

    @retry()
    async def find_in_range(
        self,
        contractor_id: str,
        start: date,
        end: date,
        statuses: Optional[list[str]] = None
    ) -> list[ScheduledJob]:
        """
        Jobs for a contractor between two dates (inclusive)

        Args:
            contractor_id: Contractor ID
            start: First date
            end: Last date
            statuses: Optional status filter

        Returns:
            Jobs ordered by date then start time
        """
        query = {
            "contractor_id": contractor_id,
            "date": {"$gte": start.isoformat(), "$lte": end.isoformat()}
        }
        if statuses:
            query["status"] = {"$in": statuses}

        docs = await self.collection.find(query).sort(
            [("date", 1), ("start_time", 1)]
        ).to_list(length=1000)

        return [ScheduledJob(**doc) for doc in docs]

    @retry()
    async def assign(
        self,
        job_id: str,
        contractor_id: str,
        day: date,
        start_time: str,
        end_time: str,
        duration_hours: float,
        notes: Optional[str],
        urgency: str
    ) -> ScheduledJob:
        """Write a committed booking onto the job and mark it assigned"""
        now = utc_now()
        result = await self.collection.find_one_and_update(
            {"job_id": job_id},
            {"$set": {
                "contractor_id": contractor_id,
                "date": day.isoformat(),
                "start_time": start_time,
                "end_time": end_time,
                "duration_hours": duration_hours,
                "notes": notes,
                "urgency": urgency,
                "status": JobStatus.ASSIGNED.value,
                "assigned_at": now,
                "updated_at": now
            }},
            return_document=True
        )
        if not result:
            raise NotFoundError("Job", job_id)
        return ScheduledJob(**result)

    @retry()
    async def update_timing(
        self,
        job_id: str,
        day: date,
        start_time: str,
        end_time: str,
        duration_hours: float
    ) -> ScheduledJob:
        """Overwrite a job's timing fields, leaving its status untouched"""
        result = await self.collection.find_one_and_update(
            {"job_id": job_id},
            {"$set": {
                "date": day.isoformat(),
                "start_time": start_time,
                "end_time": end_time,
                "duration_hours": duration_hours,
                "updated_at": utc_now()
            }},
            return_document=True
        )
        if not result:
            raise NotFoundError("Job", job_id)
        return ScheduledJob(**result)
