"""GraphHopper routing-engine client.

Fills in street-level geometry between known points.  All calls are plain
``requests`` GETs against ``/route`` with a timeout; every failure mode
(transport error, HTTP error, malformed body, no path) surfaces as
:class:`~src.errors.GeometryUnavailable` so the assembler can degrade the
affected leg to a straight line.
"""

from __future__ import annotations

import logging
import re

import requests

from src.config import GRAPHHOPPER_URL, ROUTING_TIMEOUT_S
from src.errors import GeometryUnavailable
from src.models import RouteGeometry

logger = logging.getLogger(__name__)


# ── Instruction translation ───────────────────────────────────────────
# GraphHopper answers in English when the server lacks the "es" bundle.
# Ordered: longer phrases first so "turn sharp left" never reads as "turn left".

_CARDINALS = {"north": "norte", "south": "sur", "east": "este", "west": "oeste"}
_SIDES = {"left": "la izquierda", "right": "la derecha"}

_TRANSLATIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"^(?:continue|head)\s+(north|south|east|west)\b"), "dirígete al {0}"),
    (re.compile(r"^turn sharp (left|right)\b"), "gira fuertemente a {0}"),
    (re.compile(r"^turn slight (left|right)\b"), "gira ligeramente a {0}"),
    (re.compile(r"^turn (left|right)\b"), "gira a {0}"),
    (re.compile(r"^keep (left|right)\b"), "mantente a {0}"),
    (re.compile(r"^u-turn\b"), "da la vuelta"),
    (re.compile(r"^at roundabout, take exit (\d+)"), "en la rotonda, toma la salida {0}"),
    (re.compile(r"^continue\b"), "continúa"),
    (re.compile(r"^arrive at destination\b"), "llegas a tu destino"),
    (re.compile(r"^arrive at\b"), "llegas a"),
    (re.compile(r"\bonto\b"), "por"),
    (re.compile(r"\bstraight\b"), "recto"),
    (re.compile(r"\bkilometers\b"), "kilómetros"),
    (re.compile(r"\bmeters\b"), "metros"),
]


def _localize_word(word: str) -> str:
    return _CARDINALS.get(word) or _SIDES.get(word) or word


def translate_instruction(text: str) -> str:
    """Translate a GraphHopper turn instruction into plain Spanish.

    Text that is already Spanish passes through unchanged apart from
    whitespace normalisation and capitalisation.
    """
    out = " ".join(text.strip().split())
    lowered = out.lower()
    for pattern, template in _TRANSLATIONS:
        m = pattern.search(lowered)
        if not m:
            continue
        replacement = template.format(*(_localize_word(g) for g in m.groups()))
        lowered = lowered[: m.start()] + replacement + lowered[m.end():]
        out = out[: m.start()] + replacement + out[m.end():]
        lowered = out.lower()
    return out[:1].upper() + out[1:]


class RoutingEngineClient:
    """Narrow GraphHopper client: walk, vehicle, metro and transit routes."""

    def __init__(self, base_url: str = GRAPHHOPPER_URL, timeout_s: float = ROUTING_TIMEOUT_S) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    # ── Public API ────────────────────────────────────────────────────

    def walk_route(
        self,
        from_lat: float,
        from_lon: float,
        to_lat: float,
        to_lon: float,
        detailed: bool = True,
    ) -> RouteGeometry:
        """Pedestrian route with translated turn instructions.

        With ``detailed=False`` only distance and duration are returned.
        """
        path = self._route("foot", [(from_lat, from_lon), (to_lat, to_lon)], instructions=detailed)
        geometry = _to_geometry(path, with_instructions=detailed)
        if not detailed:
            geometry.coordinates = []
        return geometry

    def vehicle_route(self, from_lat: float, from_lon: float, to_lat: float, to_lon: float) -> RouteGeometry:
        """Road geometry for a bus between two stops."""
        path = self._route("bus", [(from_lat, from_lon), (to_lat, to_lon)])
        return _to_geometry(path, with_instructions=False)

    def metro_route(self, from_lat: float, from_lon: float, to_lat: float, to_lon: float) -> RouteGeometry:
        """Rail geometry between two metro stations."""
        path = self._route("metro", [(from_lat, from_lon), (to_lat, to_lon)])
        return _to_geometry(path, with_instructions=False)

    def health_check(self) -> bool:
        """Return True when the routing engine answers its health endpoint."""
        try:
            resp = requests.get(f"{self.base_url}/health", timeout=self.timeout_s)
            return resp.status_code == 200
        except requests.RequestException as exc:
            logger.warning("Routing engine health check failed: %s", exc)
            return False

    # ── Internals ─────────────────────────────────────────────────────

    def _route(
        self,
        profile: str,
        points: list[tuple[float, float]],
        instructions: bool = True,
    ) -> dict:
        params: list[tuple[str, object]] = [("point", f"{lat},{lon}") for lat, lon in points]
        params += [
            ("profile", profile),
            ("locale", "es"),
            ("points_encoded", "false"),
            ("instructions", "true" if instructions else "false"),
        ]

        try:
            resp = requests.get(f"{self.base_url}/route", params=params, timeout=self.timeout_s)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise GeometryUnavailable(f"{profile} route request failed: {exc}") from exc
        except ValueError as exc:
            raise GeometryUnavailable(f"{profile} route returned invalid JSON") from exc

        paths = data.get("paths") or []
        if not paths:
            raise GeometryUnavailable(f"no {profile} route found")
        logger.debug(
            "%s route: %.0f m, %.0f s, %d points",
            profile,
            paths[0].get("distance", 0.0),
            paths[0].get("time", 0) / 1000,
            len((paths[0].get("points") or {}).get("coordinates") or []),
        )
        return paths[0]


def _to_geometry(path: dict, with_instructions: bool) -> RouteGeometry:
    """Convert one GraphHopper path object into a RouteGeometry."""
    try:
        coords = [
            (float(c[0]), float(c[1]))
            for c in (path.get("points") or {}).get("coordinates") or []
        ]
        geometry = RouteGeometry(
            distance_m=float(path.get("distance", 0.0)),
            duration_s=float(path.get("time", 0)) / 1000,
            coordinates=coords,
        )
    except (TypeError, ValueError, IndexError) as exc:
        raise GeometryUnavailable(f"malformed route geometry: {exc}") from exc

    if with_instructions:
        for inst in path.get("instructions") or []:
            geometry.instructions.append(translate_instruction(inst.get("text", "")))
            interval = inst.get("interval") or [0, 0]
            geometry.instruction_intervals.append((int(interval[0]), int(interval[-1])))
    return geometry
