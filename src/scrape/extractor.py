"""Heuristic extraction of transit facts from rendered planner HTML.

The planner markup is undocumented and drifts, so every fact is pulled
out by an ordered family of regular-expression strategies, most specific
first.  A strategy is plain data (name, compiled pattern, priority); the
scorer tallies every candidate as (best priority, frequency, first-seen
order) and the lowest priority wins, ties going to the more frequent and
then to the earlier candidate.  Given the same HTML the result is always
the same.

Stop codes and metro lines are first read from the marker elements the
browser's last stage injects; raw pattern matching is only the fallback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from src.config import DEFAULT_DURATION_MIN
from src.models import ExtractedOption, LightweightOption, normalize_stop_code
from src.scrape.page_scripts import (
    METRO_MARKER_ID,
    METRO_MARKER_PREFIX,
    STOPS_MARKER_ID,
    STOPS_MARKER_PREFIX,
    STOP_CODE_REGEX,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Strategy:
    """One named extraction pattern; group 1 is the candidate value."""
    name: str
    pattern: re.Pattern
    priority: int

    def find(self, html: str) -> list[str]:
        return [m.group(1).strip() for m in self.pattern.finditer(html)]


@dataclass
class Candidate:
    value: str
    priority: int
    count: int
    order: int


def _family(*specs: tuple[str, str], flags: int = 0) -> tuple[Strategy, ...]:
    """Build a strategy family; list position is the priority."""
    return tuple(
        Strategy(name=name, pattern=re.compile(regex, flags), priority=i)
        for i, (name, regex) in enumerate(specs)
    )


# ── Strategy families ─────────────────────────────────────────────────

OPTION_CONTAINER = re.compile(r"<mv-suggested-route[^>]*>([\s\S]*?)</mv-suggested-route>")

_ROUTE = r"([A-Z]?\d{2,3})"

ROUTE_NUMBER_STRATEGIES = _family(
    ("styled service label", rf'<span[^>]*class="[^"]*text[^"]*"[^>]*style="[^"]*color:[^"]*"[^>]*>{_ROUTE}</span>'),
    ("text span", rf'<span[^>]*class="[^"]*text[^"]*"[^>]*>{_ROUTE}</span>'),
    ("data-line attribute", rf"""data-line=["']{_ROUTE}["']"""),
    ("data-route attribute", rf"""data-route=["']{_ROUTE}["']"""),
    ("route-id attribute", rf"""route-id=["']{_ROUTE}["']"""),
    ("line-number class", rf'class="[^"]*line-number[^"]*"[^>]*>{_ROUTE}</'),
    ("badge class", rf'class="[^"]*badge[^"]*"[^>]*>{_ROUTE}</'),
    ("transit class", rf'class="[^"]*transit[^"]*"[^>]*>{_ROUTE}</'),
    ("service keyword", rf"(?i:red|bus|línea|linea|servicio)\s+{_ROUTE}"),
    ("three-digit span", r"<span[^>]*>([A-Z]?\d{3})</span>"),
    ("generic span", rf"<span[^>]*>{_ROUTE}</span>"),
)
# A hit among the first four strategies is specific enough to stop scanning
ROUTE_NUMBER_EARLY_STOP = 4

# Lightweight phase: first family member with any hit supplies every route
ROUTE_LIST_STRATEGIES = _family(
    ("line-number element", r"line-number[^>]*>([A-Z0-9]+)</"),
    ("route element", r"route[^>]*>([A-Z0-9]+)</"),
    ("line element", r"line[^>]*>\s*([A-Z0-9]+)\s*</"),
    ("bus element", r"bus[^>]*>([A-Z0-9]+)</"),
)

STOP_COUNT_STRATEGIES = _family(
    ("N paradas", r"(\d+)\s+paradas?"),
    ("N stops", r"(\d+)\s+stops?"),
    ("paradas: N", r"paradas?[\s:]+(\d+)"),
    ("stops: N", r"stops?[\s:]+(\d+)"),
    ("data-stops attribute", r"""data-stops=["'](\d+)["']"""),
    ("stops class", r'class="stops"[^>]*>(\d+)</'),
    ("stop-count", r"""stop-count['":\s]+(\d+)"""),
    ("stops JSON field", r'"stops"\s*:\s*(\d+)'),
    flags=re.IGNORECASE,
)

STOP_CODE_PATTERN = re.compile(STOP_CODE_REGEX, re.IGNORECASE)
START_STOP_PATTERN = re.compile(r"Sale desde\s+" + STOP_CODE_REGEX, re.IGNORECASE)

_CODE = r"([A-Z]{1,2}\d{3,4})"

STOP_CODE_STRATEGIES = _family(
    ("code-name label", rf"(?i)\b{_CODE}-"),
    ("stop keyword", rf"(?i)(?:paradero|stop|parada)[\s:-]*{_CODE}"),
    ("standalone code", rf"\b{_CODE}\b"),
    ("stop_code attribute", rf"""stop[_-]?code['":\s]+{_CODE}"""),
    ("data-stop attribute", rf"""data-stop['":\s]+{_CODE}"""),
    ("from keyword", rf"(?:desde|from|at)[\s:-]*{_CODE}"),
)
# Hits above the bare "standalone code" strategy name the stop explicitly
STOP_CODE_LABELLED_PRIORITY = 2

METRO_LINE_STRATEGIES = _family(
    ("línea keyword", r"(?i)\bl[ií]nea\s+([1-6][a-z]?)\b"),
    ("metro class", r'class="[^"]*metro[^"]*"[^>]*>\s*L?([1-6][A-Z]?)\s*<'),
    ("line badge text", r">\s*L([1-6][A-Z]?)\s*<"),
)

DURATION_PATTERN = re.compile(
    r'<span[^>]*class="[^"]*duration[^"]*"[^>]*>\s*(?:(\d+)\s*h\s*)?(\d+)\s*min\s*</span>'
)
WALKING_PATTERN = re.compile(r"(?:walk|caminar?)[^>]*>\s*(\d+)\s*min", re.IGNORECASE)

STOPS_MARKER = re.compile(
    rf'<div id="{STOPS_MARKER_ID}"[^>]*>{STOPS_MARKER_PREFIX}\s*([^<]+)</div>'
)
METRO_MARKER = re.compile(
    rf'<div id="{METRO_MARKER_ID}"[^>]*>{METRO_MARKER_PREFIX}\s*([^<]+)</div>'
)


# ── Scoring ───────────────────────────────────────────────────────────

def score_candidates(
    html: str,
    strategies: Sequence[Strategy],
    is_valid: Callable[[str], bool] = bool,
    early_stop_priority: Optional[int] = None,
) -> list[Candidate]:
    """Run *strategies* in order and rank every valid candidate.

    When *early_stop_priority* is set, scanning stops after the first
    strategy with priority below it that produced at least one candidate.
    """
    found: dict[str, Candidate] = {}
    for strategy in strategies:
        for value in strategy.find(html):
            if not is_valid(value):
                continue
            cand = found.get(value)
            if cand is None:
                found[value] = Candidate(value, strategy.priority, 1, len(found))
            else:
                cand.count += 1
                cand.priority = min(cand.priority, strategy.priority)
        if (
            early_stop_priority is not None
            and strategy.priority < early_stop_priority
            and found
        ):
            break
    return sorted(found.values(), key=lambda c: (c.priority, -c.count, c.order))


def best_candidate(
    html: str,
    strategies: Sequence[Strategy],
    is_valid: Callable[[str], bool] = bool,
    early_stop_priority: Optional[int] = None,
) -> str:
    ranked = score_candidates(html, strategies, is_valid, early_stop_priority)
    if ranked:
        top = ranked[0]
        logger.debug(
            "Best candidate %r (priority %d, seen %d×) among %d",
            top.value, top.priority, top.count, len(ranked),
        )
        return top.value
    return ""


def _first_family_hits(html: str, strategies: Iterable[Strategy]) -> list[str]:
    """Candidates of the first strategy that matches anything, de-duplicated."""
    for strategy in strategies:
        values = list(dict.fromkeys(v for v in strategy.find(html) if v))
        if values:
            return values
    return []


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


# ── Extractors ────────────────────────────────────────────────────────

def split_options(html: str) -> list[str]:
    """Inner HTML of every suggested-itinerary container, in page order."""
    return OPTION_CONTAINER.findall(html)


def _is_route_number(value: str) -> bool:
    return 2 <= len(value) <= 4


def extract_route_number(html: str) -> str:
    """Most plausible bus route number in *html* ("" when none)."""
    return best_candidate(
        html,
        ROUTE_NUMBER_STRATEGIES,
        is_valid=_is_route_number,
        early_stop_priority=ROUTE_NUMBER_EARLY_STOP,
    )


def extract_all_route_numbers(html: str) -> list[str]:
    """Every route number of one option, for multi-bus summaries."""
    routes = _first_family_hits(html, ROUTE_LIST_STRATEGIES)
    if not routes:
        single = extract_route_number(html)
        routes = [single] if single else []
    return routes


def extract_duration(html: str, default: int = DEFAULT_DURATION_MIN) -> int:
    """Trip duration in minutes from the option's duration label."""
    m = DURATION_PATTERN.search(html)
    if not m:
        return default
    hours = int(m.group(1)) if m.group(1) else 0
    return hours * 60 + int(m.group(2))


def _is_stop_count(value: str) -> bool:
    return value.isdigit() and 0 < int(value) < 200


def extract_stop_count(html: str, duration_hint: int = 0) -> int:
    """Number of stops ridden; estimated from duration when not stated."""
    best = best_candidate(html, STOP_COUNT_STRATEGIES, is_valid=_is_stop_count)
    if best:
        return int(best)
    if duration_hint > 0:
        return int(duration_hint / 1.5)
    return 0


def _marker_values(html: str, marker: re.Pattern) -> list[str]:
    m = marker.search(html)
    if not m:
        return []
    return [normalize_stop_code(v) for v in m.group(1).split(",") if v.strip()]


def _is_stop_code(value: str) -> bool:
    return STOP_CODE_PATTERN.fullmatch(value) is not None


def extract_stop_codes(html: str) -> list[str]:
    """Stop codes in itinerary order, upper-cased and de-duplicated.

    Order of trust: the injected marker element, then the boarding stop
    followed by every code in document order.  The boarding stop is the
    "Sale desde" code, or else the best-scored code when it comes from a
    labelled context (code-name label or stop keyword).
    """
    marked = [c for c in _marker_values(html, STOPS_MARKER) if STOP_CODE_PATTERN.fullmatch(c)]
    if marked:
        return _unique(marked)

    codes = [normalize_stop_code(c) for c in STOP_CODE_PATTERN.findall(html)]
    start = START_STOP_PATTERN.search(html)
    if start:
        codes.insert(0, normalize_stop_code(start.group(1)))
    else:
        ranked = score_candidates(html, STOP_CODE_STRATEGIES, is_valid=_is_stop_code)
        if ranked and ranked[0].priority < STOP_CODE_LABELLED_PRIORITY:
            codes.insert(0, normalize_stop_code(ranked[0].value))
    return _unique(codes)


def _normalize_metro_line(value: str) -> str:
    value = normalize_stop_code(value)
    return value if value.startswith("L") else f"L{value}"


def extract_metro_lines(html: str) -> list[str]:
    """Metro lines used ("L1", "L4A" ...), marker element first.

    Without a marker every line found is returned, best-scored first.
    """
    marked = _marker_values(html, METRO_MARKER)
    if marked:
        return _unique(_normalize_metro_line(v) for v in marked)
    ranked = score_candidates(html, METRO_LINE_STRATEGIES)
    return _unique(_normalize_metro_line(c.value) for c in ranked)


def extract_walking_minutes(html: str) -> int:
    """Total walking minutes stated in one option."""
    return sum(int(m) for m in WALKING_PATTERN.findall(html))


def is_metro_line(route: str) -> bool:
    return bool(re.fullmatch(r"L[1-6][A-Z]?", route))


def create_summary(route_numbers: Sequence[str], duration: int) -> str:
    """One-line, speakable description of an option."""
    if not route_numbers:
        return f"{duration} minutos"
    if all(is_metro_line(r) for r in route_numbers):
        return f"Metro {' y '.join(route_numbers)}, {duration} minutos"
    if len(route_numbers) == 1:
        return f"Bus {route_numbers[0]}, {duration} minutos"
    return f"Buses {' y '.join(route_numbers)}, {duration} minutos"


def extract_option(option_html: str, page_html: Optional[str] = None) -> ExtractedOption:
    """Every fact for one option.

    Stop codes and metro lines are read from *page_html* (the whole
    rendered page, which carries the marker elements) when given, falling
    back to the option's own markup.
    """
    duration = extract_duration(option_html)
    stop_codes = extract_stop_codes(page_html) if page_html else []
    if len(stop_codes) < 2:
        stop_codes = extract_stop_codes(option_html) or stop_codes
    metro_lines = (extract_metro_lines(page_html) if page_html else []) or extract_metro_lines(option_html)

    return ExtractedOption(
        route_number=extract_route_number(option_html),
        route_numbers=extract_all_route_numbers(option_html),
        duration_min=duration,
        stop_count=extract_stop_count(option_html, duration),
        stop_codes=stop_codes,
        metro_lines=metro_lines,
        walking_min=extract_walking_minutes(option_html),
    )


def extract_lightweight_options(html: str) -> list[LightweightOption]:
    """Summaries for every option on the page; no geometry, no lookups.

    Options with no recognisable route are skipped but keep their page
    index, so the index can be passed straight to the detailed phase.
    """
    options: list[LightweightOption] = []
    for idx, option_html in enumerate(split_options(html)):
        routes = extract_all_route_numbers(option_html)
        if not routes:
            routes = extract_metro_lines(option_html)
        if not routes:
            logger.debug("Option %d has no recognisable route; skipped", idx)
            continue
        duration = extract_duration(option_html)
        options.append(
            LightweightOption(
                index=idx,
                route_numbers=routes,
                duration_min=duration,
                summary=create_summary(routes, duration),
                walking_min=extract_walking_minutes(option_html),
                transfers=max(0, len(routes) - 1),
            )
        )
    logger.info("Extracted %d lightweight options", len(options))
    return options
