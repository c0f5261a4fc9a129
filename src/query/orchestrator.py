"""Two-phase itinerary queries.

Phase one (:meth:`ItineraryEngine.get_lightweight_options`) renders the
planner page, lists the options it offers and keeps the HTML for
``HTML_CACHE_TTL_S``.  Phase two (:meth:`ItineraryEngine.get_detailed_itinerary`)
reuses that HTML when the user picks an option, so choosing does not cost
a second browser session.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from src.config import (
    DEFAULT_DEST_NAME,
    DEFAULT_ORIGIN_NAME,
    DETAIL_BACKOFF_S,
    DETAIL_RETRIES,
    MAX_STOPS,
    NEARBY_STOP_RADIUS_M,
    SCHEDULE_DB_PATH,
)
from src.errors import (
    ExtractionIncomplete,
    RouteNotFound,
    ScheduleUnavailable,
    ScrapeTimeout,
    StopNotFound,
)
from src.ingest.geocode import reverse_geocode
from src.ingest.routing_engine import RoutingEngineClient
from src.ingest.schedule_store import ScheduleStore
from src.models import Coordinate, Itinerary, LightweightOption, RouteDetail, Stop, StopArrivals
from src.query.arrivals import ArrivalsTracker
from src.query.assembler import ItineraryAssembler
from src.query.cache import TTLCache, cache_key
from src.scrape.browser import BrowserController
from src.scrape.extractor import extract_lightweight_options, extract_option, split_options

logger = logging.getLogger(__name__)


def open_schedule_store(db_path: Path = SCHEDULE_DB_PATH) -> Optional[ScheduleStore]:
    """Open the schedule database, or ``None`` when it has not been built."""
    try:
        return ScheduleStore(db_path)
    except FileNotFoundError:
        logger.warning("Schedule DB %s missing; stop lookups disabled (run 'build-db')", db_path)
        return None


class ItineraryEngine:
    """Entry point for itinerary and arrivals queries.

    Every collaborator can be injected; defaults are built from config.
    """

    def __init__(
        self,
        browser: Optional[BrowserController] = None,
        store: Optional[ScheduleStore] = None,
        routing: Optional[RoutingEngineClient] = None,
        assembler: Optional[ItineraryAssembler] = None,
        cache: Optional[TTLCache[str]] = None,
        tracker: Optional[ArrivalsTracker] = None,
        geocoder: Callable[[float, float, str], str] = reverse_geocode,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.browser = browser or BrowserController()
        self.store = store
        self.routing = routing or RoutingEngineClient()
        self.assembler = assembler or ItineraryAssembler(self.routing, self.store)
        self.cache: TTLCache[str] = cache if cache is not None else TTLCache()
        self.tracker = tracker or ArrivalsTracker(self.browser, self.store)
        self.geocoder = geocoder
        self.sleep = sleep

    # ── Phase one ─────────────────────────────────────────────────────

    def get_lightweight_options(self, origin: Coordinate, destination: Coordinate) -> list[LightweightOption]:
        """All options the planner offers, without geometry or lookups.

        Always renders a fresh page and caches it for the detailed phase.

        Raises
        ------
        ExtractionIncomplete
            The page rendered but no option could be read from it.
        """
        html = self._fetch(origin, destination)
        options = extract_lightweight_options(html)
        if not options:
            raise ExtractionIncomplete(
                f"No itinerary options found in planner page ({len(html)} chars)"
            )
        return options

    # ── Phase two ─────────────────────────────────────────────────────

    def get_detailed_itinerary(
        self,
        origin: Coordinate,
        destination: Coordinate,
        option_index: int,
    ) -> Itinerary:
        """Full itinerary with geometry for option *option_index*.

        Degrades to the fallback itinerary when the chosen option carries
        too little data.  Fetch failures propagate once retries are spent.
        """
        key = cache_key(origin, destination)
        html = self.cache.get(key)
        if html is None:
            logger.info("No cached page for %s; fetching", key)
            html = self._fetch_with_retry(origin, destination)

        options = split_options(html)
        if not 0 <= option_index < len(options):
            logger.warning("Option %d out of range (%d options); using fallback", option_index, len(options))
            return self.assembler.build_fallback(origin, destination)

        # Marker elements are injected for the first (expanded) option only
        page_html = html if option_index == 0 else None
        option = extract_option(options[option_index], page_html)
        route_number = option.route_number or (option.metro_lines[0] if option.metro_lines else "")
        if not route_number:
            logger.warning("Option %d has no route number; using fallback", option_index)
            return self.assembler.build_fallback(origin, destination, duration_hint=option.duration_min)

        logger.info(
            "Option %d: route %s, %d min, %d stop codes, metro %s",
            option_index, route_number, option.duration_min, len(option.stop_codes), option.metro_lines,
        )
        stops = self._resolve_stops(option.stop_codes)
        metro_lines = [line for line in option.metro_lines if line != route_number]
        return self.assembler.build_itinerary(
            route_number, option.duration_min, stops, origin, destination, metro_lines,
        )

    def get_fallback_itinerary(self, origin: Coordinate, destination: Coordinate) -> Itinerary:
        """Heuristic itinerary that never touches the planner site."""
        return self.assembler.build_fallback(origin, destination)

    # ── Arrivals ──────────────────────────────────────────────────────

    def get_arrivals(self, stop_code: str) -> StopArrivals:
        return self.tracker.get_arrivals(stop_code)

    # ── Schedule lookups ──────────────────────────────────────────────

    def get_route(self, route_number: str) -> RouteDetail:
        """Stops of *route_number* with the ride routed pair by pair.

        Pairs the routing engine cannot route become straight lines and
        the leg is flagged ``degraded``.

        Raises
        ------
        ScheduleUnavailable
            No schedule database is open.
        RouteNotFound
            The route is not in the schedule database.
        """
        store = self._require_store()
        route = store.route_stops(route_number)
        if route is None:
            raise RouteNotFound(route_number)
        if len(route.stops) < 2:
            logger.warning("Route %s has %d stops; no geometry", route_number, len(route.stops))
            return RouteDetail(route=route)
        return RouteDetail(route=route, leg=self.assembler.ride_leg(route.short_name, route.stops))

    def get_nearby_stops(
        self,
        lat: float,
        lon: float,
        radius_m: float = NEARBY_STOP_RADIUS_M,
        limit: int = 10,
    ) -> list[Stop]:
        """Stops within *radius_m* of a point, nearest first."""
        return self._require_store().nearby_stops(lat, lon, radius_m=radius_m, limit=limit)

    # ── Internals ─────────────────────────────────────────────────────

    def _fetch(self, origin: Coordinate, destination: Coordinate) -> str:
        origin_name = self.geocoder(origin[0], origin[1], DEFAULT_ORIGIN_NAME)
        dest_name = self.geocoder(destination[0], destination[1], DEFAULT_DEST_NAME)
        html = self.browser.fetch_rendered_page(origin_name, dest_name, origin, destination)
        self.cache.put(cache_key(origin, destination), html)
        return html

    def _fetch_with_retry(self, origin: Coordinate, destination: Coordinate) -> str:
        """:meth:`_fetch` with exponential backoff on timeouts.

        ``BrowserUnavailable`` is not retried: a missing browser stays missing.
        """
        attempt = 0
        while True:
            try:
                return self._fetch(origin, destination)
            except ScrapeTimeout as exc:
                if attempt >= DETAIL_RETRIES:
                    logger.warning("Planner fetch failed after %d attempts: %s", attempt + 1, exc)
                    raise
                delay = DETAIL_BACKOFF_S * 2 ** attempt
                logger.warning("Planner fetch attempt %d failed (%s); retrying in %.0fs", attempt + 1, exc, delay)
                self.sleep(delay)
                attempt += 1

    def _require_store(self) -> ScheduleStore:
        if self.store is None:
            raise ScheduleUnavailable("Schedule database not built; run 'build-db'")
        return self.store

    def _resolve_stops(self, codes: list[str]) -> list[Stop]:
        if self.store is None:
            logger.warning("No schedule DB; %d stop codes left unresolved", len(codes))
            return []
        if len(codes) > MAX_STOPS:
            logger.info("Resolving first %d of %d stop codes", MAX_STOPS, len(codes))

        stops: list[Stop] = []
        for code in codes[:MAX_STOPS]:
            try:
                stops.append(self.store.stop_by_code(code))
            except StopNotFound:
                logger.warning("Stop %s not in schedule DB; skipped", code)
        logger.info("Resolved %d/%d stop codes", len(stops), min(len(codes), MAX_STOPS))
        return stops

    # ── Lifecycle ─────────────────────────────────────────────────────

    def close(self) -> None:
        self.cache.clear()
        if self.store is not None:
            self.store.close()

    def __enter__(self) -> ItineraryEngine:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
