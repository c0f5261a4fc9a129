#!/usr/bin/env python3
"""Refresh the schedule database.

Downloads the current DTPM GTFS feed (if the local copy is older than
GTFS_CACHE_DAYS) and rebuilds data/gtfs/schedule.db from it.

Intended to be run weekly by cron.

Usage:
    python scripts/refresh_data.py [--force]
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main() -> None:
    from src.config import FALLBACK_ROUTES
    from src.ingest.gtfs import ensure_schedule_db
    from src.ingest.schedule_store import ScheduleStore

    force = "--force" in sys.argv[1:]
    db_path = ensure_schedule_db(force=force)

    # Smoke check: the catalogue routes should be resolvable
    with ScheduleStore(db_path) as store:
        routes = {r: store.route_stops(r) for r in FALLBACK_ROUTES}
    missing = [r for r, route in routes.items() if route is None or not route.stops]
    if missing:
        logger.warning("Fallback routes without stops: %s", ", ".join(missing))

    size_mb = db_path.stat().st_size / (1024 * 1024)
    print(f"Done. Schedule database at {db_path} ({size_mb:.1f} MB)")


if __name__ == "__main__":
    main()
