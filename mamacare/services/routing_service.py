"""
Straight-line route estimation between ordered waypoints.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from mamacare.errors import BadRequest
from mamacare.runtime import Deadline, check_deadline
from mamacare.schemas import Location, Route, RoutePoint, TransportMode
from mamacare.services import geo_service as geo

logger = logging.getLogger(__name__)

# Average speed per transport mode, km/h
SPEEDS_KMH = {
    TransportMode.DRIVING: 30.0,
    TransportMode.WALKING: 5.0,
    TransportMode.BICYCLING: 10.0,
}

# Allowance for stops and traffic
TRAFFIC_BUFFER = 1.2


def parse_mode(mode) -> TransportMode:
    if not mode:
        return TransportMode.DRIVING
    try:
        return TransportMode(mode)
    except ValueError:
        raise BadRequest(f"unsupported transport mode: {mode}")


def speed_for(mode) -> float:
    return SPEEDS_KMH[parse_mode(mode)]


def leg_duration_seconds(distance_km: float, mode) -> int:
    return int(math.ceil(distance_km / speed_for(mode) * 3600 * TRAFFIC_BUFFER))


class RouteBuilder:
    """Builds routes with per-leg distance, duration and arrival times."""

    def __init__(self, clock):
        self.clock = clock

    def build_route(
        self,
        points: Sequence[Location],
        mode: TransportMode = TransportMode.DRIVING,
        departure_time: Optional[datetime] = None,
        optimize: bool = False,
        names: Optional[Sequence[Optional[str]]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Route:
        if len(points) < 2:
            raise BadRequest("at least 2 points are required to build a route")
        check_deadline(deadline, "build_route")

        mode = parse_mode(mode)
        labels = list(names) if names is not None else [None] * len(points)
        if len(labels) != len(points):
            raise BadRequest("names must match points")

        stops = list(zip(points, labels))
        if optimize and len(stops) > 3:
            stops = self._optimize(stops)

        departure = departure_time or self.clock.now()
        if departure.tzinfo is None:
            departure = departure.replace(tzinfo=self.clock.tz)

        route_points: List[RoutePoint] = []
        elapsed = 0
        total_distance = 0.0
        for index, (location, name) in enumerate(stops):
            distance = 0.0
            duration = 0
            if index < len(stops) - 1:
                distance = geo.distance_km(location, stops[index + 1][0])
                duration = leg_duration_seconds(distance, mode)

            route_points.append(RoutePoint(
                location=location,
                name=name,
                distance_to_next_km=distance,
                duration_seconds=duration,
                arrival_time=(departure + timedelta(seconds=elapsed)).isoformat(),
            ))
            elapsed += duration
            total_distance += distance

        end = departure + timedelta(seconds=elapsed)
        logger.info("Built %s route with %d points, %.2f km", mode.value, len(route_points), total_distance)
        return Route(
            points=route_points,
            mode=mode,
            total_distance_km=total_distance,
            total_duration_seconds=elapsed,
            start_time=departure.isoformat(),
            end_time=end.isoformat(),
        )

    def _optimize(self, stops):
        # First and last stops stay pinned
        first, last = stops[0], stops[-1]
        interior = stops[1:-1]
        ordered = geo.nearest_neighbor_tour(first[0], [loc for loc, _ in interior], last[0])

        # Map locations back to their labels, consuming duplicates in order
        pending = list(interior)
        result = [first]
        for location in ordered:
            for i, (candidate, name) in enumerate(pending):
                if candidate == location:
                    result.append(pending.pop(i))
                    break
        result.append(last)
        return result

    def build_visit_route(
        self,
        chw_home: Location,
        mothers: Sequence[Location],
        mode: TransportMode = TransportMode.DRIVING,
        departure_time: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> Route:
        """Round trip from the CHW's home through every mother's location."""
        points = [chw_home] + list(mothers) + [chw_home]
        names = ["CHW home"] + [f"Visit {i + 1}" for i in range(len(mothers))] + ["CHW home"]
        return self.build_route(points, mode, departure_time, optimize=True, names=names, deadline=deadline)

    @staticmethod
    def describe_route(route: Route) -> List[str]:
        """Human-readable description of each leg plus a summary line."""
        if route is None or len(route.points) < 2:
            return ["Invalid route"]

        lines = []
        for current, following in zip(route.points, route.points[1:]):
            if current.name and following.name:
                line = f"From {current.name} to {following.name}"
            else:
                line = f"From point {geo.format_point(current.location)} to {geo.format_point(following.location)}"
            line += f" ({geo.format_distance(current.distance_to_next_km)}, {geo.format_duration(current.duration_seconds)})"
            lines.append(line)

        lines.append(
            f"Total journey: {geo.format_distance(route.total_distance_km)}, "
            f"{geo.format_duration(route.total_duration_seconds)}"
        )
        return lines
