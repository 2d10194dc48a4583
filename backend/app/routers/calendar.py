"""
Calendar Export API Router
iCalendar feed per job
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database import get_database
from app.services.calendar_service import CalendarService
from app.services.job_store import JobStore

router = APIRouter()


def get_calendar_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> CalendarService:
    """Get calendar service"""
    return CalendarService(db)


def get_job_store(db: AsyncIOMotorDatabase = Depends(get_database)) -> JobStore:
    """Get job store"""
    return JobStore(db)


@router.get(
    "/job/{job_id}.ics",
    summary="Download a job's calendar event"
)
async def get_job_ics(
    job_id: str,
    calendar: CalendarService = Depends(get_calendar_service),
    jobs: JobStore = Depends(get_job_store)
):
    """Render the job's VEVENT from its current timing"""
    job = await jobs.get(job_id)
    ics = await calendar.render_for_job(job)
    return Response(
        content=ics,
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.ics"'}
    )
