"""Real-time bus arrivals at a stop, with "just passed" detection.

Each poll is compared with the previous reading of the same stop: a bus
that was close and has vanished, or that was very close and now shows up
far away (the next bus of the same route), is reported as having passed.
The comparison is only ever against the immediately preceding poll.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Callable, Optional

from src.config import (
    ARRIVAL_HISTORY_TTL_S,
    PASSED_JUMP_KM,
    PASSED_LOOKBACK_S,
    PASSED_NEAR_KM,
    PASSED_VERY_NEAR_KM,
)
from src.ingest.schedule_store import ScheduleStore
from src.models import ArrivalSighting, BusArrival, StopArrivals, normalize_stop_code
from src.scrape.browser import BrowserController

logger = logging.getLogger(__name__)

# Row layout on the arrivals site:
#   <td class="recorrido"><a class="bus">C01</a></td>
#   <td class="tiempo-llegada">0.3km <span>(Llegando.)</span></td>
ROW_PATTERN = re.compile(r"(?s)<tr[^>]*>(.*?)</tr>")
ROUTE_PATTERN = re.compile(r'class="bus[^"]*"[^>]*>([A-Z]?\d{2,3}[A-Z]?)</')
DISTANCE_PATTERN = re.compile(r"(\d+\.?\d*)\s*km")
STOP_NAME_PATTERN = re.compile(r"(?s)Paradero\s+([A-Z]+\d+).*?<.*?>([^<]+)</")


def parse_arrivals(html: str) -> list[BusArrival]:
    """Buses listed in the arrivals table, de-duplicated, in page order."""
    arrivals: list[BusArrival] = []
    seen: set[str] = set()

    for row in ROW_PATTERN.findall(html):
        route_match = ROUTE_PATTERN.search(row)
        if not route_match:
            continue
        route_number = route_match.group(1).strip()

        dist_match = DISTANCE_PATTERN.search(row)
        distance_km = float(dist_match.group(1)) if dist_match else 0.0

        key = f"{route_number}_{distance_km:.1f}"
        if key in seen:
            continue
        seen.add(key)

        if not route_number or distance_km == 0:
            continue
        arrivals.append(BusArrival(route_number=route_number, distance_km=distance_km))
        logger.debug("Bus %s at %.1f km", route_number, distance_km)

    logger.info("Parsed %d arrivals", len(arrivals))
    return arrivals


def stop_name_from_html(html: str) -> Optional[str]:
    """Stop display name from the page heading, if present."""
    m = STOP_NAME_PATTERN.search(html)
    if m:
        name = m.group(2).strip()
        return name or None
    return None


class ArrivalsTracker:
    """Polls a stop's arrivals and remembers the last reading per stop."""

    def __init__(
        self,
        browser: BrowserController,
        store: Optional[ScheduleStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.browser = browser
        self.store = store
        self.clock = clock
        self._history: dict[str, list[ArrivalSighting]] = {}
        self._lock = threading.Lock()

    def get_arrivals(self, stop_code: str) -> StopArrivals:
        """Fetch, parse and diff the current arrivals for *stop_code*.

        Raises
        ------
        ScrapeTimeout, BrowserUnavailable
            When the arrivals page cannot be fetched.
        """
        code = normalize_stop_code(stop_code)
        html = self.browser.fetch_arrivals_page(code)
        arrivals = parse_arrivals(html)
        passed = self.record(code, arrivals)

        name = self.store.stop_name(code) if self.store is not None else None
        if not name:
            name = stop_name_from_html(html) or code

        if passed:
            logger.info("Stop %s: passed %s", code, [p.route_number for p in passed])
        return StopArrivals(stop_code=code, stop_name=name, arrivals=arrivals, passed=passed)

    def record(self, stop_code: str, arrivals: list[BusArrival]) -> list[BusArrival]:
        """Diff *arrivals* against the previous reading and store them.

        Returns the buses judged to have passed the stop since the last
        poll.  Arrivals that look like the next bus after one that just
        passed get ``just_passed`` set.
        """
        now = self.clock()
        # Several rows of one route: the last row is the one compared
        current: dict[str, BusArrival] = {}
        for arrival in arrivals:
            current[arrival.route_number] = arrival

        with self._lock:
            previous = self._history.get(stop_code, [])
            passed: list[BusArrival] = []

            for sighting in previous:
                if now - sighting.seen_at > PASSED_LOOKBACK_S:
                    continue
                now_seen = current.get(sighting.route_number)
                if now_seen is None:
                    if sighting.distance_km <= PASSED_NEAR_KM:
                        logger.info(
                            "Bus %s gone from %s (was %.1f km)",
                            sighting.route_number, stop_code, sighting.distance_km,
                        )
                        passed.append(BusArrival(sighting.route_number, sighting.distance_km, just_passed=True))
                elif sighting.distance_km <= PASSED_VERY_NEAR_KM and now_seen.distance_km > PASSED_JUMP_KM:
                    logger.info(
                        "Bus %s at %s jumped %.1f -> %.1f km",
                        sighting.route_number, stop_code, sighting.distance_km, now_seen.distance_km,
                    )
                    now_seen.just_passed = True
                    passed.append(BusArrival(sighting.route_number, sighting.distance_km, just_passed=True))

            self._history[stop_code] = [
                ArrivalSighting(a.route_number, a.distance_km, now) for a in arrivals
            ]
            self._prune(now)

        return passed

    def _prune(self, now: float) -> None:
        stale = [
            code for code, sightings in self._history.items()
            if all(now - s.seen_at > ARRIVAL_HISTORY_TTL_S for s in sightings)
        ]
        for code in stale:
            del self._history[code]
        if stale:
            logger.debug("Pruned arrival history for %d stops", len(stale))

    def history(self, stop_code: str) -> list[ArrivalSighting]:
        """Copy of the last recorded reading for *stop_code*."""
        with self._lock:
            return list(self._history.get(normalize_stop_code(stop_code), []))
