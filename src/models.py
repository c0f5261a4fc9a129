"""Core data structures for the transit itinerary engine."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Optional

Coordinate = tuple[float, float]  # (lat, lon)
LonLat = tuple[float, float]      # geometry points, GeoJSON order


def normalize_stop_code(raw: str) -> str:
    """Canonical form of a stop code: no whitespace, upper case."""
    return "".join(raw.split()).upper()


@dataclass(frozen=True, eq=False)
class Stop:
    """A bus or metro stop.  ``code=None`` marks a synthetic placeholder."""
    code: Optional[str]
    name: str
    lat: float
    lon: float
    sequence: int = 0
    stop_id: str = ""

    def __post_init__(self) -> None:
        if self.code is not None:
            object.__setattr__(self, "code", normalize_stop_code(self.code))

    @property
    def is_synthetic(self) -> bool:
        return self.code is None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Stop):
            return NotImplemented
        if self.code is None or other.code is None:
            return self is other
        return self.code == other.code

    def __hash__(self) -> int:
        return hash(self.code) if self.code is not None else id(self)


@dataclass
class TripLeg:
    """One contiguous single-mode segment of an itinerary."""
    kind: str  # "walk", "bus" or "metro"
    mode: str  # "walk", "Red", "Metro"
    from_stop: Stop
    to_stop: Stop
    duration_min: int
    distance_km: float
    instruction: str
    geometry: list[LonLat] = field(default_factory=list)
    route_number: Optional[str] = None
    stops: list[Stop] = field(default_factory=list)
    stop_count: int = 0
    # Empty or straight-line geometry
    degraded: bool = False
    turn_instructions: list[str] = field(default_factory=list)

    @property
    def is_ride(self) -> bool:
        return self.kind in ("bus", "metro")


@dataclass
class Itinerary:
    """A complete origin-to-destination plan."""
    origin: Coordinate
    destination: Coordinate
    legs: list[TripLeg]
    total_duration_min: int
    total_distance_km: float
    route_numbers: list[str]
    departure_time: str
    arrival_time: str
    source: str = "scrape"  # "scrape", "schedule" or "fallback"

    @property
    def is_degraded(self) -> bool:
        return any(leg.degraded for leg in self.legs)

    def is_continuous(self) -> bool:
        """True when each leg starts where the previous one ended.

        Synthetic stops are placeholders and never compared.
        """
        for prev, nxt in zip(self.legs, self.legs[1:]):
            a, b = prev.to_stop, nxt.from_stop
            if a.is_synthetic or b.is_synthetic:
                continue
            if a != b:
                return False
        return True


@dataclass
class LightweightOption:
    """Summary of one itinerary option, without geometry."""
    index: int
    route_numbers: list[str]
    duration_min: int
    summary: str
    walking_min: int = 0
    transfers: int = 0


@dataclass
class ExtractedOption:
    """Facts pulled from the HTML of a single itinerary option."""
    route_number: str = ""
    route_numbers: list[str] = field(default_factory=list)
    duration_min: int = 0
    stop_count: int = 0
    stop_codes: list[str] = field(default_factory=list)
    metro_lines: list[str] = field(default_factory=list)
    walking_min: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.route_number or self.stop_codes or self.metro_lines)


@dataclass
class RouteGeometry:
    """A routed path returned by the routing engine."""
    distance_m: float
    duration_s: float
    coordinates: list[LonLat] = field(default_factory=list)
    instructions: list[str] = field(default_factory=list)
    instruction_intervals: list[tuple[int, int]] = field(default_factory=list)


@dataclass
class ScheduleRoute:
    """A route and the ordered stops of one representative trip."""
    route_id: str
    short_name: str
    long_name: str
    stops: list[Stop] = field(default_factory=list)


@dataclass
class RouteDetail:
    """A schedule route with its ride routed stop pair by stop pair."""
    route: ScheduleRoute
    leg: Optional[TripLeg] = None  # None when the route has fewer than two stops


@dataclass
class BusArrival:
    """A bus approaching a stop."""
    route_number: str
    distance_km: float
    just_passed: bool = False


@dataclass
class ArrivalSighting:
    """One entry of a stop's arrival history."""
    route_number: str
    distance_km: float
    seen_at: float  # clock seconds


@dataclass
class StopArrivals:
    """Real-time arrivals at one stop."""
    stop_code: str
    stop_name: str
    arrivals: list[BusArrival]
    passed: list[BusArrival] = field(default_factory=list)
    updated_at: datetime.datetime = field(default_factory=datetime.datetime.now)
