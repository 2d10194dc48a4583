"""
Routing Service
Optimized visiting order for a contractor's day using the OSRM trip API
"""

import httpx
import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_settings
from app.models.route_optimization import OptimizedRoute, RouteDestination, RouteLeg, RoutePoint
from app.utils.exceptions import RoutingServiceError
from app.utils.retry import retry

logger = logging.getLogger(__name__)


class RoutingService:
    """Adapter around the routing backend; no optimization logic lives here"""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.db = db
        self.settings = get_settings()
        self.transport = transport

    @retry()
    async def get_contractor_location(self, contractor_id: str) -> Optional[RoutePoint]:
        """Contractor's home base, if one is stored"""
        contractor = await self.db.contractors.find_one({"contractor_id": contractor_id})
        if not contractor:
            return None

        location = contractor.get("location") or {}
        if location.get("lat") is None or location.get("lng") is None:
            return None
        return RoutePoint(lat=location["lat"], lng=location["lng"])

    async def get_optimized_route(
        self,
        origin: RoutePoint,
        destinations: List[RouteDestination],
        options: Optional[Dict[str, Any]] = None
    ) -> OptimizedRoute:
        """
        Ask OSRM for the fastest visiting order starting at origin.

        The reported total duration covers driving time plus the on-site
        duration of every stop, so it is comparable with a schedule's length.

        Args:
            origin: Starting point (not part of the returned order)
            destinations: Job stops
            options: Optional {"profile": "driving"}

        Returns:
            OptimizedRoute with optimized_order as indexes into destinations

        Raises:
            RoutingServiceError: request failed or no trip was found
        """
        if not destinations:
            return OptimizedRoute(optimized_order=[], total_duration_seconds=0)

        options = options or {}
        profile = options.get("profile", "driving")

        # OSRM uses lon,lat
        points = [origin] + [RoutePoint(lat=d.lat, lng=d.lng) for d in destinations]
        coords = ";".join(f"{p.lng},{p.lat}" for p in points)
        url = f"{self.settings.OSRM_BASE_URL}/trip/v1/{profile}/{coords}"
        params = {"source": "first", "roundtrip": "false", "overview": "false"}

        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.get(
                    url, params=params, timeout=self.settings.ROUTING_TIMEOUT_SECONDS
                )
        except httpx.HTTPError as e:
            logger.error(f"OSRM trip request failed: {e}")
            raise RoutingServiceError(f"Routing request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"OSRM trip returned {response.status_code}")
            raise RoutingServiceError(f"Routing service returned {response.status_code}")

        data = response.json()
        if data.get("code") != "Ok" or not data.get("trips"):
            raise RoutingServiceError(f"No trip found ({data.get('code')})")

        return self._parse_trip(data, destinations)

    def _parse_trip(self, data: dict, destinations: List[RouteDestination]) -> OptimizedRoute:
        trip = data["trips"][0]
        waypoints = data.get("waypoints", [])
        if len(waypoints) != len(destinations) + 1:
            raise RoutingServiceError("Routing response does not match the requested stops")

        # waypoints are in input order; waypoint_index is the position in the trip
        positions = [(wp["waypoint_index"], i - 1) for i, wp in enumerate(waypoints) if i > 0]
        optimized_order = [index for _, index in sorted(positions)]

        legs = [
            RouteLeg(
                duration_seconds=leg.get("duration", 0),
                distance_meters=leg.get("distance", 0)
            )
            for leg in trip.get("legs", [])
        ]

        on_site_seconds = sum(d.duration_hours * 3600 for d in destinations)

        return OptimizedRoute(
            optimized_order=optimized_order,
            total_duration_seconds=trip["duration"] + on_site_seconds,
            total_distance_meters=trip.get("distance", 0),
            legs=legs
        )
