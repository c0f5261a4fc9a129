"""Exception taxonomy for the itinerary engine.

Only ``BrowserUnavailable`` and ``ScrapeTimeout`` normally reach callers of
the itinerary queries; the others are raised by leaf components and absorbed
by the assembler / orchestrator, which degrade the result instead of failing.
The route and nearby-stop lookups raise ``RouteNotFound`` and
``ScheduleUnavailable`` directly.
"""


class TransitEngineError(Exception):
    """Base exception for the itinerary engine."""


class BrowserUnavailable(TransitEngineError):
    """Raised when no usable headless browser can be launched."""


class ScrapeTimeout(TransitEngineError):
    """Raised when a page does not render its required element in time."""


class ExtractionIncomplete(TransitEngineError):
    """Raised when scraped HTML lacks the facts needed for an itinerary."""


class GeometryUnavailable(TransitEngineError):
    """Raised when the routing engine cannot route one segment."""


class ScheduleUnavailable(TransitEngineError):
    """Raised when a lookup needs the schedule database and it is not built."""


class StopNotFound(TransitEngineError):
    """Raised when a stop code is missing from the schedule database."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Stop {code!r} not found in schedule database")
        self.code = code


class RouteNotFound(TransitEngineError):
    """Raised when a route number is missing from the schedule database."""

    def __init__(self, route_number: str) -> None:
        super().__init__(f"Route {route_number!r} not found in schedule database")
        self.route_number = route_number
