"""Distance-scoring route choice used when scraping yields too little.

Scores a fixed catalogue of well-known routes by how close their stops
pass to the origin and the destination.  Needs only the schedule
database, so it also works when the planner site is unreachable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from src.config import (
    FALLBACK_DEFAULT_ROUTE,
    FALLBACK_DISTANCE_PENALTY_M,
    FALLBACK_MAX_STOP_DISTANCE_M,
    FALLBACK_ROUTES,
)
from src.ingest.gtfs import haversine
from src.ingest.schedule_store import ScheduleStore
from src.models import Coordinate, Stop

logger = logging.getLogger(__name__)


@dataclass
class RouteScore:
    """Proximity score of one catalogue route (lower is better)."""
    route_number: str
    origin_distance_m: float
    dest_distance_m: float
    score: float


def nearest_stop(stops: Sequence[Stop], point: Coordinate) -> tuple[Stop, float]:
    """Nearest stop to *point* and its distance in meters; first wins ties."""
    best = stops[0]
    best_dist = haversine(point[0], point[1], best.lat, best.lon)
    for stop in stops[1:]:
        dist = haversine(point[0], point[1], stop.lat, stop.lon)
        if dist < best_dist:
            best, best_dist = stop, dist
    return best, best_dist


class FallbackEngine:
    """Picks the catalogue route that best serves an origin/destination pair."""

    def __init__(
        self,
        store: Optional[ScheduleStore],
        routes: Sequence[str] = FALLBACK_ROUTES,
    ) -> None:
        self.store = store
        self.routes = tuple(routes)

    def scores(self, origin: Coordinate, destination: Coordinate) -> list[RouteScore]:
        """Score every catalogue route with known stops, in catalogue order."""
        results: list[RouteScore] = []
        if self.store is None:
            return results

        for route_number in self.routes:
            route = self.store.route_stops(route_number)
            if route is None or not route.stops:
                logger.info("Fallback route %s unavailable", route_number)
                continue

            _, origin_dist = nearest_stop(route.stops, origin)
            _, dest_dist = nearest_stop(route.stops, destination)
            score = origin_dist + dest_dist
            if origin_dist > FALLBACK_MAX_STOP_DISTANCE_M:
                score += FALLBACK_DISTANCE_PENALTY_M
            if dest_dist > FALLBACK_MAX_STOP_DISTANCE_M:
                score += FALLBACK_DISTANCE_PENALTY_M

            results.append(RouteScore(route_number, origin_dist, dest_dist, score))
            logger.debug(
                "Route %s: origin %.0f m, destination %.0f m, score %.0f",
                route_number, origin_dist, dest_dist, score,
            )
        return results

    def best_route(self, origin: Coordinate, destination: Coordinate) -> str:
        """Lowest-scoring route; the first enumerated one wins ties."""
        scored = self.scores(origin, destination)
        if not scored:
            logger.warning("No fallback route scored; defaulting to %s", FALLBACK_DEFAULT_ROUTE)
            return FALLBACK_DEFAULT_ROUTE

        best = scored[0]
        for candidate in scored[1:]:
            if candidate.score < best.score:
                best = candidate
        logger.info(
            "Fallback route %s (origin %.0f m, destination %.0f m)",
            best.route_number, best.origin_distance_m, best.dest_distance_m,
        )
        return best.route_number
