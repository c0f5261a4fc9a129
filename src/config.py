"""Constants and configuration for the Santiago transit itinerary engine."""

import os
from pathlib import Path

# ── Paths ──────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
GTFS_DIR = DATA_DIR / "gtfs"

# ── GTFS (DTPM Santiago feed) ──────────────────────────────────────────
GTFS_URL = os.getenv(
    "GTFS_URL",
    "https://www.dtpm.cl/descargas/gtfs/GTFS-V2-PO20250517.zip",
)
GTFS_ZIP_PATH = GTFS_DIR / "santiago-gtfs.zip"
GTFS_CACHE_DAYS = 7
SCHEDULE_DB_PATH = Path(os.getenv("SCHEDULE_DB_PATH", str(GTFS_DIR / "schedule.db")))
ROUTE_QUERY_TIMEOUT_S = 10.0
STOP_QUERY_TIMEOUT_S = 3.0

# ── Routing engine (GraphHopper) ──────────────────────────────────────
GRAPHHOPPER_URL = os.getenv("GRAPHHOPPER_URL", "http://localhost:8989")
ROUTING_TIMEOUT_S = float(os.getenv("ROUTING_TIMEOUT_S", "15"))

# ── Reverse geocoding (Nominatim) ─────────────────────────────────────
NOMINATIM_URL = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse")
NOMINATIM_USER_AGENT = "santiago-transit-itinerary/0.1"
GEOCODE_TIMEOUT_S = 10
DEFAULT_ORIGIN_NAME = "Origen"
DEFAULT_DEST_NAME = "Destino"

# ── Itinerary planner website ─────────────────────────────────────────
MOOVIT_BASE_URL = os.getenv("MOOVIT_BASE_URL", "https://moovitapp.com")
MOOVIT_CITY_PATH = "santiago-642"
MOOVIT_CUSTOMER_ID = 4908
MOOVIT_METRO_SEO_NAME = "Santiago"

# ── Real-time arrivals website ────────────────────────────────────────
REDCL_ARRIVALS_URL = os.getenv(
    "REDCL_ARRIVALS_URL",
    "https://www.red.cl/planifica-tu-viaje/cuando-llega/",
)

# ── Headless browser ──────────────────────────────────────────────────
BROWSER_TIMEOUT_S = float(os.getenv("BROWSER_TIMEOUT_S", "90"))
ARRIVALS_TIMEOUT_S = float(os.getenv("ARRIVALS_TIMEOUT_S", "30"))
# Multiplier on the per-stage settle delays below; 0 disables waiting
BROWSER_SETTLE_SCALE = float(os.getenv("BROWSER_SETTLE_SCALE", "1"))
STAGE_SETTLE_S = {
    "navigate": 3.0,
    "open_first_option": 5.0,
    "expand_stops": 3.0,
    "scroll": 2.0,
    "inject_markers": 2.0,
    "arrivals": 4.0,
}
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_ARGS = [
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]
SCROLL_STEP_PX = 500

# ── Caches ────────────────────────────────────────────────────────────
HTML_CACHE_TTL_S = 15 * 60
ARRIVAL_HISTORY_TTL_S = 15 * 60

# ── Two-phase orchestration ───────────────────────────────────────────
DETAIL_RETRIES = 2           # retries after the first fetch attempt
DETAIL_BACKOFF_S = 2.0       # first backoff; doubles per retry
MAX_STOPS = 50               # stop codes resolved per detailed itinerary

# ── Itinerary assembly ────────────────────────────────────────────────
WALK_SPEED_M_PER_MIN = 80.0
BUS_SPEED_M_PER_MIN = 400.0
MIN_FALLBACK_BUS_MINUTES = 15
FINAL_WALK_MIN_M = 1.0       # below this the destination is "already there"
DEFAULT_DURATION_MIN = 30
SYNTHETIC_ORIGIN_NAME = "Tu ubicación"
SYNTHETIC_DEST_NAME = "Tu destino"

# ── Fallback route catalogue ──────────────────────────────────────────
FALLBACK_ROUTES: tuple[str, ...] = ("104", "210", "211", "405", "426", "427", "506", "516")
FALLBACK_DEFAULT_ROUTE = "506"
FALLBACK_MAX_STOP_DISTANCE_M = 1000
FALLBACK_DISTANCE_PENALTY_M = 10_000
NEARBY_STOP_RADIUS_M = 500

# ── Real-time arrivals ────────────────────────────────────────────────
PASSED_NEAR_KM = 2.0         # previously this close and now gone -> passed
PASSED_VERY_NEAR_KM = 1.0    # previously this close ...
PASSED_JUMP_KM = 5.0         # ... and now this far -> passed
PASSED_LOOKBACK_S = 10 * 60  # older sightings are not compared
