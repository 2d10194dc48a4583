"""
Contractor Availability API Router
Working hours, open slots, calendar and statistics per contractor
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database import get_database
from app.models.availability import AvailabilityResponse, AvailabilityUpdate, DaySlots
from app.models.route_optimization import RouteOptimizationResult
from app.models.scheduled_job import CalendarEntry, SchedulingStats
from app.schemas.common import ERROR_RESPONSES, ListResponse, SingleResponse
from app.services.availability_service import AvailabilityService
from app.services.scheduling_service import SchedulingService
from app.services.slot_generator import SlotGenerator

router = APIRouter()


def get_availability_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> AvailabilityService:
    """Get availability service"""
    return AvailabilityService(db)


def get_slot_generator(db: AsyncIOMotorDatabase = Depends(get_database)) -> SlotGenerator:
    """Get slot generator"""
    return SlotGenerator(db)


def get_scheduling_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> SchedulingService:
    """Get scheduling service"""
    return SchedulingService(db)


@router.put(
    "/{contractor_id}/availability",
    response_model=SingleResponse[AvailabilityResponse],
    responses=ERROR_RESPONSES,
    summary="Replace contractor availability"
)
async def set_availability(
    contractor_id: str,
    data: AvailabilityUpdate,
    service: AvailabilityService = Depends(get_availability_service)
):
    """Replace working hours, limits and blocked dates"""
    profile = await service.set_availability(contractor_id, data)
    return SingleResponse(data=AvailabilityResponse.model_validate(profile))


@router.get(
    "/{contractor_id}/availability/settings",
    response_model=SingleResponse[AvailabilityResponse],
    summary="Get contractor availability settings"
)
async def get_availability(
    contractor_id: str,
    service: AvailabilityService = Depends(get_availability_service)
):
    """Get the stored availability profile"""
    profile = await service.get_availability(contractor_id)
    return SingleResponse(data=AvailabilityResponse.model_validate(profile))


@router.get(
    "/{contractor_id}/availability",
    response_model=ListResponse[DaySlots],
    summary="Get open slots per day"
)
async def get_available_slots(
    contractor_id: str,
    start: Optional[date] = Query(None, description="First date YYYY-MM-DD (default contractor-local today)"),
    end: Optional[date] = Query(None, description="Last date YYYY-MM-DD (default start + 6 days)"),
    generator: SlotGenerator = Depends(get_slot_generator)
):
    """Open slots for every day in the range"""
    days = list(await generator.generate_slots(contractor_id, start, end))

    return ListResponse(data=days, count=len(days))


@router.get(
    "/{contractor_id}/calendar",
    response_model=ListResponse[CalendarEntry],
    summary="Get contractor calendar"
)
async def get_calendar(
    contractor_id: str,
    start: date = Query(..., description="First date YYYY-MM-DD"),
    end: date = Query(..., description="Last date YYYY-MM-DD"),
    scheduling: SchedulingService = Depends(get_scheduling_service)
):
    """Scheduled jobs in a date range for display"""
    entries = await scheduling.get_contractor_calendar(contractor_id, start, end)
    return ListResponse(data=entries, count=len(entries))


@router.get(
    "/{contractor_id}/stats",
    response_model=SingleResponse[SchedulingStats],
    summary="Get scheduling statistics"
)
async def get_stats(
    contractor_id: str,
    period: str = Query("month", description="week or month"),
    scheduling: SchedulingService = Depends(get_scheduling_service)
):
    """Job counts over the last week or month"""
    stats = await scheduling.get_scheduling_stats(contractor_id, period)
    return SingleResponse(data=stats)


@router.post(
    "/{contractor_id}/routes/{route_date}/optimize",
    response_model=SingleResponse[RouteOptimizationResult],
    summary="Optimize a day's route"
)
async def optimize_route(
    contractor_id: str,
    route_date: date,
    scheduling: SchedulingService = Depends(get_scheduling_service)
):
    """Ask the routing service for a better order and apply it if clearly shorter"""
    result = await scheduling.optimize_route(contractor_id, route_date)
    return SingleResponse(data=result)
