"""Read-only queries against the GTFS schedule database.

The database is produced by :func:`src.ingest.gtfs.build_schedule_db`.
Every query runs under a wall-clock budget enforced through SQLite's
progress handler, so a slow query is interrupted instead of blocking the
request that issued it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional

from src.config import NEARBY_STOP_RADIUS_M, ROUTE_QUERY_TIMEOUT_S, STOP_QUERY_TIMEOUT_S
from src.errors import StopNotFound
from src.ingest.gtfs import haversine
from src.models import ScheduleRoute, Stop, normalize_stop_code

logger = logging.getLogger(__name__)

_PROGRESS_OPCODES = 10_000  # VM instructions between deadline checks


class ScheduleStore:
    """Schedule lookups keyed by route short name or stop code.

    A single connection is shared across threads and serialised with a
    lock; route stop lists are memoised for the lifetime of the store.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        if not self.db_path.exists():
            raise FileNotFoundError(f"Schedule database not found: {self.db_path}")
        self._conn = sqlite3.connect(
            f"file:{self.db_path}?mode=ro",
            uri=True,
            timeout=STOP_QUERY_TIMEOUT_S,
            check_same_thread=False,
        )
        self._lock = threading.Lock()
        self._route_cache: dict[str, Optional[ScheduleRoute]] = {}
        logger.info("ScheduleStore opened: %s", self.db_path.name)

    # ── Low-level query with deadline ─────────────────────────────────

    def _query(self, sql: str, params: tuple, timeout_s: float) -> list[tuple]:
        deadline = time.monotonic() + timeout_s

        def _check_deadline() -> int:
            # Non-zero aborts the running statement
            return 1 if time.monotonic() > deadline else 0

        with self._lock:
            self._conn.set_progress_handler(_check_deadline, _PROGRESS_OPCODES)
            try:
                return self._conn.execute(sql, params).fetchall()
            finally:
                self._conn.set_progress_handler(None, 0)

    # ── Routes ────────────────────────────────────────────────────────

    def route_by_short_name(self, short_name: str) -> Optional[tuple[str, str]]:
        """Return ``(route_id, display_name)`` for a short name or route id."""
        rows = self._query(
            "SELECT route_id, COALESCE(long_name, short_name, route_id) "
            "FROM routes WHERE short_name = ? OR route_id = ? LIMIT 1",
            (short_name, short_name),
            ROUTE_QUERY_TIMEOUT_S,
        )
        return (rows[0][0], rows[0][1]) if rows else None

    def representative_trip(self, route_id: str) -> Optional[str]:
        """Return one trip of *route_id*, preferring the outbound direction."""
        rows = self._query(
            "SELECT trip_id FROM trips WHERE route_id = ? "
            "ORDER BY COALESCE(direction_id, 0), trip_id LIMIT 1",
            (route_id,),
            ROUTE_QUERY_TIMEOUT_S,
        )
        return rows[0][0] if rows else None

    def stop_times_for_trip(self, trip_id: str) -> list[Stop]:
        """Ordered stops served by *trip_id*."""
        rows = self._query(
            "SELECT s.stop_id, s.stop_code, s.stop_name, s.stop_lat, s.stop_lon, "
            "st.stop_sequence "
            "FROM stop_times st JOIN stops s ON st.stop_id = s.stop_id "
            "WHERE st.trip_id = ? ORDER BY st.stop_sequence ASC",
            (trip_id,),
            ROUTE_QUERY_TIMEOUT_S,
        )
        return [
            Stop(
                code=code or stop_id,
                name=name,
                lat=lat,
                lon=lon,
                sequence=seq,
                stop_id=stop_id,
            )
            for stop_id, code, name, lat, lon, seq in rows
        ]

    def route_stops(self, short_name: str) -> Optional[ScheduleRoute]:
        """Route metadata plus the stop list of a representative trip.

        Returns ``None`` when the route is unknown or the lookup fails.
        A route without trips comes back with an empty stop list.
        """
        if short_name in self._route_cache:
            return self._route_cache[short_name]

        try:
            found = self.route_by_short_name(short_name)
            if found is None:
                logger.info("Route %s not found in schedule DB", short_name)
                route = None
            else:
                route_id, long_name = found
                trip_id = self.representative_trip(route_id)
                stops = self.stop_times_for_trip(trip_id) if trip_id else []
                if not stops:
                    logger.warning("Route %s has no trips with stops", short_name)
                route = ScheduleRoute(
                    route_id=route_id,
                    short_name=short_name,
                    long_name=long_name,
                    stops=stops,
                )
                logger.info("Route %s loaded: %d stops", short_name, len(stops))
        except sqlite3.Error as exc:
            # Not memoised: a timeout may succeed on the next request
            logger.warning("Route lookup for %s failed: %s", short_name, exc)
            return None

        self._route_cache[short_name] = route
        return route

    # ── Stops ─────────────────────────────────────────────────────────

    def stop_by_code(self, code: str) -> Stop:
        """Look up a stop by signage code or stop id, case-insensitively.

        Raises
        ------
        StopNotFound
            When no stop matches, or the lookup times out.
        """
        norm = normalize_stop_code(code)
        try:
            rows = self._query(
                "SELECT stop_id, stop_code, stop_name, stop_lat, stop_lon FROM stops "
                "WHERE UPPER(stop_id) = ? OR UPPER(stop_code) = ? LIMIT 1",
                (norm, norm),
                STOP_QUERY_TIMEOUT_S,
            )
        except sqlite3.Error as exc:
            logger.warning("Stop lookup for %s failed: %s", norm, exc)
            raise StopNotFound(norm) from exc

        if not rows:
            raise StopNotFound(norm)
        stop_id, stop_code, name, lat, lon = rows[0]
        return Stop(code=stop_code or stop_id, name=name, lat=lat, lon=lon, stop_id=stop_id)

    def stop_name(self, code: str) -> Optional[str]:
        """Display name for a stop code, or ``None`` when unknown."""
        try:
            return self.stop_by_code(code).name
        except StopNotFound:
            return None

    def nearby_stops(
        self,
        lat: float,
        lon: float,
        radius_m: float = NEARBY_STOP_RADIUS_M,
        limit: int = 10,
    ) -> list[Stop]:
        """Stops within *radius_m* of (*lat*, *lon*), nearest first."""
        # Rough bounding box filter (1 degree ≈ 111 km)
        deg_margin = (radius_m / 111_000) * 1.5
        rows = self._query(
            "SELECT stop_id, stop_code, stop_name, stop_lat, stop_lon FROM stops "
            "WHERE stop_lat BETWEEN ? AND ? AND stop_lon BETWEEN ? AND ?",
            (lat - deg_margin, lat + deg_margin, lon - deg_margin, lon + deg_margin),
            STOP_QUERY_TIMEOUT_S,
        )

        results: list[tuple[float, Stop]] = []
        for stop_id, code, name, slat, slon in rows:
            dist = haversine(lat, lon, slat, slon)
            if dist <= radius_m:
                results.append(
                    (dist, Stop(code=code or stop_id, name=name, lat=slat, lon=slon, stop_id=stop_id))
                )

        results.sort(key=lambda x: x[0])
        return [stop for _, stop in results[:limit]]

    # ── Lifecycle ─────────────────────────────────────────────────────

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._conn.close()

    def __enter__(self) -> ScheduleStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
