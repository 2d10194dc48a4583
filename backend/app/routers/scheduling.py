"""
Job Scheduling API Router
Booking commits, reschedules and reschedule history
"""

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database import get_database
from app.models.scheduled_job import (
    RescheduleJobRequest, RescheduleJobResult, RescheduleRecord, ScheduleJobRequest, ScheduleJobResult
)
from app.schemas.common import ERROR_RESPONSES, ListResponse, SingleResponse
from app.services.scheduling_service import SchedulingService

router = APIRouter()


def get_scheduling_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> SchedulingService:
    """Get scheduling service"""
    return SchedulingService(db)


@router.post(
    "/{job_id}/schedule",
    response_model=SingleResponse[ScheduleJobResult],
    responses=ERROR_RESPONSES,
    summary="Schedule a job"
)
async def schedule_job(
    job_id: str,
    data: ScheduleJobRequest,
    scheduling: SchedulingService = Depends(get_scheduling_service)
):
    """
    Book a job with a contractor.

    Returns the assigned job and its calendar event. 409 with the rejection
    reason when an availability check fails.
    """
    result = await scheduling.schedule_job(job_id, data)
    return SingleResponse(data=result)


@router.post(
    "/{job_id}/reschedule",
    response_model=SingleResponse[RescheduleJobResult],
    responses=ERROR_RESPONSES,
    summary="Reschedule a job"
)
async def reschedule_job(
    job_id: str,
    data: RescheduleJobRequest,
    scheduling: SchedulingService = Depends(get_scheduling_service)
):
    """Move a scheduled job to a new date and time"""
    result = await scheduling.reschedule_job(job_id, data)
    return SingleResponse(data=result)


@router.get(
    "/{job_id}/reschedules",
    response_model=ListResponse[RescheduleRecord],
    summary="Get reschedule history"
)
async def get_reschedule_history(
    job_id: str,
    scheduling: SchedulingService = Depends(get_scheduling_service)
):
    """Reschedule records for a job, oldest first"""
    records = await scheduling.get_reschedule_history(job_id)
    return ListResponse(data=records, count=len(records))
