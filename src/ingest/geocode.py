"""Nominatim reverse-geocoding client: coordinates → short place name.

The planner page URL embeds human-readable origin/destination names next
to the coordinates.  The names are cosmetic (the page routes on the
coordinates), so any failure falls back to a generic label.

Caching: module-level dict keyed by coordinates rounded to ~10 m.
"""

import logging
import threading

import requests

from src.config import GEOCODE_TIMEOUT_S, NOMINATIM_URL, NOMINATIM_USER_AGENT

logger = logging.getLogger(__name__)

_name_cache: dict[tuple[float, float], str] = {}
_cache_lock = threading.Lock()


def reverse_geocode(lat: float, lon: float, fallback: str) -> str:
    """Return a short name for (*lat*, *lon*), or *fallback* on failure.

    The short name is the first comma-separated component of Nominatim's
    ``display_name`` (usually the street address or POI name).
    """
    key = (round(lat, 4), round(lon, 4))
    with _cache_lock:
        if key in _name_cache:
            return _name_cache[key]

    params = {
        "format": "json",
        "lat": f"{lat:.6f}",
        "lon": f"{lon:.6f}",
        "zoom": 18,
        "addressdetails": 1,
    }
    headers = {"User-Agent": NOMINATIM_USER_AGENT}

    try:
        response = requests.get(NOMINATIM_URL, params=params, headers=headers, timeout=GEOCODE_TIMEOUT_S)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("Reverse geocoding (%.5f, %.5f) failed (%s); using %r.", lat, lon, exc, fallback)
        return fallback

    display_name = str(data.get("display_name") or "").strip()
    name = display_name.split(",")[0].strip()
    if not name:
        logger.info("Nominatim returned no name for (%.5f, %.5f); using %r.", lat, lon, fallback)
        return fallback

    with _cache_lock:
        _name_cache[key] = name
    logger.debug("Reverse geocoded (%.5f, %.5f) -> %s", lat, lon, name)
    return name
