"""Itinerary assembly: resolved stops + route number → walk / ride / walk.

Geometry comes from the routing engine one segment at a time.  A segment
the engine cannot route is replaced by a straight line and its leg is
flagged ``degraded``; an itinerary is never rejected for missing geometry.
When too few stops are known, the route's stop list is taken from the
schedule database, and failing that the distance-scoring fallback picks a
route from the catalogue.
"""

from __future__ import annotations

import datetime
import logging
import math
from typing import Callable, Optional, Sequence

from shapely.geometry import LineString

from src.config import (
    BUS_SPEED_M_PER_MIN,
    FINAL_WALK_MIN_M,
    MIN_FALLBACK_BUS_MINUTES,
    SYNTHETIC_DEST_NAME,
    SYNTHETIC_ORIGIN_NAME,
    WALK_SPEED_M_PER_MIN,
)
from src.errors import GeometryUnavailable
from src.ingest.gtfs import haversine
from src.ingest.routing_engine import RoutingEngineClient
from src.ingest.schedule_store import ScheduleStore
from src.models import Coordinate, Itinerary, LonLat, RouteGeometry, Stop, TripLeg
from src.query.fallback import FallbackEngine, nearest_stop
from src.scrape.extractor import is_metro_line

logger = logging.getLogger(__name__)


# ── Geometry helpers ──────────────────────────────────────────────────

def straight_line(a: Stop, b: Stop) -> list[LonLat]:
    """Two-point (lon, lat) polyline from *a* to *b*."""
    return [(a.lon, a.lat), (b.lon, b.lat)]


def interpolate_line(a: Stop, b: Stop, num_points: int) -> list[LonLat]:
    """*num_points* evenly spaced (lon, lat) points from *a* to *b* inclusive."""
    if num_points <= 2:
        return straight_line(a, b)
    line = LineString(straight_line(a, b))
    points = [line.interpolate(i / (num_points - 1), normalized=True) for i in range(num_points)]
    return [(p.x, p.y) for p in points]


def _minutes(seconds: float) -> int:
    return max(1, math.ceil(seconds / 60))


def _stop_distance_m(a: Stop, b: Stop) -> float:
    return haversine(a.lat, a.lon, b.lat, b.lon)


def slice_between(stops: Sequence[Stop], board: Stop, alight: Stop) -> list[Stop]:
    """Stops from *board* to *alight* inclusive, in riding order."""
    i = list(stops).index(board)
    j = list(stops).index(alight)
    if i <= j:
        return list(stops[i:j + 1])
    return list(reversed(stops[j:i + 1]))


class ItineraryAssembler:
    """Builds itineraries from stops, a route number and routed geometry."""

    def __init__(
        self,
        routing: Optional[RoutingEngineClient] = None,
        store: Optional[ScheduleStore] = None,
        fallback: Optional[FallbackEngine] = None,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.routing = routing
        self.store = store
        self.fallback = fallback or FallbackEngine(store)
        self.clock = clock

    # ── Public API ────────────────────────────────────────────────────

    def build_itinerary(
        self,
        route_number: str,
        duration_hint: int,
        stops: Sequence[Stop],
        origin: Coordinate,
        destination: Coordinate,
        metro_lines: Sequence[str] = (),
    ) -> Itinerary:
        """Three-leg itinerary (walk, ride, walk) for one route.

        *stops* are the resolved stops of the option in itinerary order.
        Falls back to the schedule database, then to the route catalogue,
        when they do not yield a distinct boarding and alighting stop.
        """
        source = "scrape"
        ride_stops = self._ride_stops([s for s in stops if not s.is_synthetic], origin, destination)

        if ride_stops is None and route_number:
            logger.info("Only %d usable stops; completing route %s from schedule", len(stops), route_number)
            ride_stops = self._schedule_ride_stops(route_number, origin, destination)
            source = "schedule"

        if ride_stops is None:
            logger.warning("Insufficient stop data for route %r; using fallback route", route_number)
            return self.build_fallback(origin, destination, duration_hint=duration_hint)

        legs = self._three_legs(route_number, ride_stops, origin, destination, duration_hint)
        return self._finish(origin, destination, legs, [route_number, *metro_lines], source)

    def build_fallback(
        self,
        origin: Coordinate,
        destination: Coordinate,
        route_number: Optional[str] = None,
        duration_hint: int = 0,
    ) -> Itinerary:
        """Best-effort itinerary from the fallback route catalogue.

        Uses the schedule stops of the chosen route when it passes near
        both ends; otherwise a single straight-line bus leg.
        """
        route_number = route_number or self.fallback.best_route(origin, destination)
        ride_stops = self._schedule_ride_stops(route_number, origin, destination)
        if ride_stops is not None:
            legs = self._three_legs(route_number, ride_stops, origin, destination, duration_hint)
        else:
            legs = [self._direct_bus_leg(route_number, origin, destination)]
        return self._finish(origin, destination, legs, [route_number], "fallback")

    # ── Stop selection ────────────────────────────────────────────────

    @staticmethod
    def _ride_stops(
        stops: Sequence[Stop],
        origin: Coordinate,
        destination: Coordinate,
    ) -> Optional[list[Stop]]:
        if len(stops) < 2:
            return None
        board, _ = nearest_stop(stops, origin)
        alight, _ = nearest_stop(stops, destination)
        if board == alight:
            return None
        return slice_between(stops, board, alight)

    def _schedule_ride_stops(
        self,
        route_number: str,
        origin: Coordinate,
        destination: Coordinate,
    ) -> Optional[list[Stop]]:
        if self.store is None:
            return None
        route = self.store.route_stops(route_number)
        if route is None:
            return None
        return self._ride_stops(route.stops, origin, destination)

    # ── Leg builders ──────────────────────────────────────────────────

    def _three_legs(
        self,
        route_number: str,
        ride_stops: list[Stop],
        origin: Coordinate,
        destination: Coordinate,
        duration_hint: int,
    ) -> list[TripLeg]:
        board, alight = ride_stops[0], ride_stops[-1]
        here = Stop(code=None, name=SYNTHETIC_ORIGIN_NAME, lat=origin[0], lon=origin[1])
        there = Stop(code=None, name=SYNTHETIC_DEST_NAME, lat=destination[0], lon=destination[1])

        legs = [self._walk_leg(here, board, f"Camina hacia el paradero {board.name}")]
        if _stop_distance_m(alight, there) >= FINAL_WALK_MIN_M:
            final_walk = self._walk_leg(alight, there, "Camina hacia tu destino")
        else:
            logger.info("Alighting stop %s is at the destination; no final walk", alight.code)
            final_walk = None

        ride = self.ride_leg(route_number, ride_stops)
        if duration_hint > 0:
            walking = legs[0].duration_min + (final_walk.duration_min if final_walk else 0)
            ride.duration_min = max(1, duration_hint - walking)
        legs.append(ride)
        if final_walk is not None:
            legs.append(final_walk)
        return legs

    def _walk_leg(self, start: Stop, end: Stop, instruction: str) -> TripLeg:
        try:
            if self.routing is None:
                raise GeometryUnavailable("no routing engine configured")
            route = self.routing.walk_route(start.lat, start.lon, end.lat, end.lon, detailed=True)
            if not route.coordinates:
                raise GeometryUnavailable("walking route has no geometry")
        except GeometryUnavailable as exc:
            logger.warning("Walk %s -> %s degraded to straight line: %s", start.name, end.name, exc)
            distance_m = _stop_distance_m(start, end)
            return TripLeg(
                kind="walk",
                mode="walk",
                from_stop=start,
                to_stop=end,
                duration_min=_minutes(distance_m / WALK_SPEED_M_PER_MIN * 60),
                distance_km=round(distance_m / 1000, 3),
                instruction=instruction,
                geometry=straight_line(start, end),
                degraded=True,
            )

        return TripLeg(
            kind="walk",
            mode="walk",
            from_stop=start,
            to_stop=end,
            duration_min=_minutes(route.duration_s),
            distance_km=round(route.distance_m / 1000, 3),
            instruction=instruction,
            geometry=list(route.coordinates),
            turn_instructions=list(route.instructions),
        )

    def _route_segment(self, a: Stop, b: Stop, metro: bool) -> RouteGeometry:
        if self.routing is None:
            raise GeometryUnavailable("no routing engine configured")
        if metro:
            return self.routing.metro_route(a.lat, a.lon, b.lat, b.lon)
        return self.routing.vehicle_route(a.lat, a.lon, b.lat, b.lon)

    def ride_leg(self, route_number: str, ride_stops: list[Stop]) -> TripLeg:
        """Ride leg routed stop pair by stop pair and concatenated."""
        metro = is_metro_line(route_number)
        board, alight = ride_stops[0], ride_stops[-1]
        geometry: list[LonLat] = []
        distance_m = 0.0
        duration_s = 0.0
        degraded_pairs = 0

        for a, b in zip(ride_stops, ride_stops[1:]):
            try:
                seg = self._route_segment(a, b, metro)
                if not seg.coordinates:
                    raise GeometryUnavailable("segment has no geometry")
                coords = list(seg.coordinates)
                distance_m += seg.distance_m
                duration_s += seg.duration_s
            except GeometryUnavailable as exc:
                logger.debug("Segment %s -> %s degraded: %s", a.code, b.code, exc)
                degraded_pairs += 1
                coords = straight_line(a, b)
                pair_m = _stop_distance_m(a, b)
                distance_m += pair_m
                duration_s += pair_m / BUS_SPEED_M_PER_MIN * 60
            # Joint point duplicates the previous segment's last point
            geometry.extend(coords if not geometry else coords[1:])

        if degraded_pairs:
            logger.warning(
                "Ride %s: %d of %d segments degraded to straight lines",
                route_number, degraded_pairs, len(ride_stops) - 1,
            )

        if metro:
            mode, kind = "Metro", "metro"
            instruction = f"Toma el Metro {route_number} en {board.name} hacia {alight.name}"
        else:
            mode, kind = "Red", "bus"
            instruction = f"Toma el bus Red {route_number} en {board.name} hacia {alight.name}"

        return TripLeg(
            kind=kind,
            mode=mode,
            from_stop=board,
            to_stop=alight,
            duration_min=_minutes(duration_s),
            distance_km=round(distance_m / 1000, 3),
            instruction=instruction,
            geometry=geometry,
            route_number=route_number,
            stops=list(ride_stops),
            stop_count=len(ride_stops),
            degraded=degraded_pairs > 0,
        )

    def _direct_bus_leg(self, route_number: str, origin: Coordinate, destination: Coordinate) -> TripLeg:
        """Single straight bus leg used when no stops are known at all."""
        start = Stop(code=None, name=SYNTHETIC_ORIGIN_NAME, lat=origin[0], lon=origin[1])
        end = Stop(code=None, name=SYNTHETIC_DEST_NAME, lat=destination[0], lon=destination[1])
        distance_m = _stop_distance_m(start, end)
        return TripLeg(
            kind="bus",
            mode="Red",
            from_stop=start,
            to_stop=end,
            duration_min=max(MIN_FALLBACK_BUS_MINUTES, _minutes(distance_m / BUS_SPEED_M_PER_MIN * 60)),
            distance_km=round(distance_m / 1000, 3),
            instruction=f"Toma el bus {route_number} hacia tu destino",
            geometry=interpolate_line(start, end, 10),
            route_number=route_number,
            degraded=True,
        )

    # ── Totals ────────────────────────────────────────────────────────

    def _finish(
        self,
        origin: Coordinate,
        destination: Coordinate,
        legs: list[TripLeg],
        route_numbers: Sequence[str],
        source: str,
    ) -> Itinerary:
        total_min = sum(leg.duration_min for leg in legs)
        total_km = round(sum(leg.distance_km for leg in legs), 3)
        now = self.clock()
        itinerary = Itinerary(
            origin=origin,
            destination=destination,
            legs=legs,
            total_duration_min=total_min,
            total_distance_km=total_km,
            route_numbers=list(dict.fromkeys(r for r in route_numbers if r)),
            departure_time=now.strftime("%H:%M"),
            arrival_time=(now + datetime.timedelta(minutes=total_min)).strftime("%H:%M"),
            source=source,
        )
        logger.info(
            "Itinerary (%s): %d legs, %d min, %.2f km, routes %s%s",
            source, len(legs), total_min, total_km, itinerary.route_numbers,
            " [degraded]" if itinerary.is_degraded else "",
        )
        return itinerary
