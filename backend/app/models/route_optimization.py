"""
Route Optimization Model
Routing service results and the optimizer's decision record
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field


class RoutePoint(BaseModel):
    """A location on the route"""
    lat: float
    lng: float


class RouteDestination(BaseModel):
    """A job stop handed to the routing service"""
    job_id: str
    lat: float
    lng: float
    duration_hours: float
    scheduled_time: Optional[str] = None


class RouteLeg(BaseModel):
    """Travel between two consecutive points"""
    duration_seconds: float
    distance_meters: float = 0.0


class OptimizedRoute(BaseModel):
    """Routing service answer: visiting order as indexes into the destinations"""
    optimized_order: list[int]
    total_duration_seconds: float
    total_distance_meters: float = 0.0
    # legs[0] is origin -> first stop, legs[i] is stop i-1 -> stop i
    legs: list[RouteLeg] = Field(default_factory=list)


class RouteStop(BaseModel):
    """Rewritten window for one job"""
    order: int
    job_id: str
    start_time: str
    end_time: str
    travel_from_previous_minutes: int = 0


class RouteOptimizationResult(BaseModel):
    """Ephemeral decision record for one optimization attempt"""
    contractor_id: str
    date: date
    original_order: list[str] = Field(default_factory=list)
    optimized_order: list[str] = Field(default_factory=list)
    naive_total_minutes: float = 0
    optimized_total_minutes: float = 0
    estimated_time_savings_minutes: float = 0
    accepted: bool = False
    reason: Optional[str] = None
    stops: list[RouteStop] = Field(default_factory=list)
