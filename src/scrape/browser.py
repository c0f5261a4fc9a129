"""Headless-browser page fetching for the planner and arrivals websites.

Both sites render client-side and expose no API, so pages are driven with
Playwright's synchronous Chromium API.  One isolated browser per request;
the browser is closed on every exit path.

Planner page stages (each followed by a settle delay and a snapshot):

  1. navigate, wait for the itinerary list to be visible   (required)
  2. click the first suggested itinerary                   (best effort)
  3. expand every "N paradas" disclosure                   (best effort)
  4. scroll to the bottom to trigger lazy loading          (best effort)
  5. inject stop-code / metro-line marker elements         (best effort)

The longest snapshot wins: a late stage sometimes breaks the page while an
earlier snapshot still has everything the extractor needs.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator
from urllib.parse import quote

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, sync_playwright
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from src.config import (
    ARRIVALS_TIMEOUT_S,
    BROWSER_ARGS,
    BROWSER_SETTLE_SCALE,
    BROWSER_TIMEOUT_S,
    BROWSER_USER_AGENT,
    MOOVIT_BASE_URL,
    MOOVIT_CITY_PATH,
    MOOVIT_CUSTOMER_ID,
    MOOVIT_METRO_SEO_NAME,
    REDCL_ARRIVALS_URL,
    SCROLL_STEP_PX,
    STAGE_SETTLE_S,
)
from src.errors import BrowserUnavailable, ScrapeTimeout
from src.models import Coordinate, normalize_stop_code
from src.scrape import page_scripts

logger = logging.getLogger(__name__)


# ── URL builders ──────────────────────────────────────────────────────

def build_planner_url(
    origin_name: str,
    dest_name: str,
    origin: Coordinate,
    dest: Coordinate,
    base_url: str = MOOVIT_BASE_URL,
) -> str:
    """Trip-plan URL for the planner site.  Destination precedes origin in the path."""
    return (
        f"{base_url.rstrip('/')}/tripplan/{MOOVIT_CITY_PATH}/poi/"
        f"{quote(dest_name, safe='')}/{quote(origin_name, safe='')}/es-419"
        f"?fll={origin[0]:.6f}_{origin[1]:.6f}"
        f"&tll={dest[0]:.6f}_{dest[1]:.6f}"
        f"&customerId={MOOVIT_CUSTOMER_ID}&metroSeoName={MOOVIT_METRO_SEO_NAME}"
    )


def build_arrivals_url(stop_code: str, base_url: str = REDCL_ARRIVALS_URL) -> str:
    """Per-stop "cuando llega" URL for the arrivals site."""
    return f"{base_url}?codsimt={quote(normalize_stop_code(stop_code), safe='')}"


class _Deadline:
    """Remaining-time bookkeeping for one browser session."""

    def __init__(self, seconds: float) -> None:
        self.expires_at = time.monotonic() + seconds

    def remaining_s(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def remaining_ms(self) -> float:
        # Playwright treats timeout=0 as "wait forever"
        return max(1.0, self.remaining_s() * 1000)

    @property
    def expired(self) -> bool:
        return self.remaining_s() <= 0


class BrowserController:
    """Fetches fully rendered HTML from the planner and arrivals sites."""

    def __init__(
        self,
        timeout_s: float = BROWSER_TIMEOUT_S,
        arrivals_timeout_s: float = ARRIVALS_TIMEOUT_S,
        settle_scale: float = BROWSER_SETTLE_SCALE,
        headless: bool = True,
    ) -> None:
        self.timeout_s = timeout_s
        self.arrivals_timeout_s = arrivals_timeout_s
        self.settle_scale = settle_scale
        self.headless = headless

    # ── Session lifecycle ─────────────────────────────────────────────

    @contextmanager
    def _page(self, deadline: _Deadline) -> Iterator[Page]:
        """Open an isolated Chromium page; tear everything down on exit.

        The page's default timeout is the time left on *deadline*.
        """
        try:
            playwright = sync_playwright().start()
        except PlaywrightError as exc:
            raise BrowserUnavailable(f"Playwright driver unavailable: {exc}") from exc

        browser = None
        try:
            try:
                browser = playwright.chromium.launch(headless=self.headless, args=BROWSER_ARGS)
            except PlaywrightError as exc:
                raise BrowserUnavailable(
                    f"Cannot launch Chromium (run 'playwright install chromium'): {exc}"
                ) from exc
            try:
                context = browser.new_context(user_agent=BROWSER_USER_AGENT, locale="es-CL")
                page = context.new_page()
            except PlaywrightError as exc:
                raise BrowserUnavailable(f"Cannot open a browser page: {exc}") from exc
            page.set_default_timeout(deadline.remaining_ms())
            yield page
        finally:
            if browser is not None:
                try:
                    browser.close()
                except PlaywrightError as exc:
                    logger.warning("Browser close failed: %s", exc)
            playwright.stop()

    def _settle(self, page: Page, stage: str, deadline: _Deadline) -> None:
        wait_ms = min(STAGE_SETTLE_S.get(stage, 0.0) * self.settle_scale * 1000, deadline.remaining_ms())
        if wait_ms > 0:
            page.wait_for_timeout(wait_ms)

    # ── Planner page ──────────────────────────────────────────────────

    def fetch_rendered_page(
        self,
        origin_name: str,
        dest_name: str,
        origin: Coordinate,
        dest: Coordinate,
    ) -> str:
        """Render the planner page for an origin/destination pair.

        Returns the longest HTML snapshot taken across all stages.

        Raises
        ------
        BrowserUnavailable
            No Chromium could be launched.
        ScrapeTimeout
            The itinerary list never became visible before the deadline.
        """
        url = build_planner_url(origin_name, dest_name, origin, dest)
        deadline = _Deadline(self.timeout_s)
        logger.info("Fetching planner page %s", url)

        with self._page(deadline) as page:
            try:
                page.goto(url, wait_until="domcontentloaded", timeout=deadline.remaining_ms())
                page.wait_for_selector(
                    page_scripts.SUGGESTED_ROUTE_SELECTOR,
                    state="visible",
                    timeout=deadline.remaining_ms(),
                )
                self._settle(page, "navigate", deadline)
                snapshots = [page.content()]
            except PlaywrightTimeoutError as exc:
                raise ScrapeTimeout(f"Itinerary list not visible within {self.timeout_s:.0f}s") from exc
            except PlaywrightError as exc:
                raise ScrapeTimeout(f"Planner page failed to load: {exc}") from exc
            logger.info("Stage navigate: %d chars", len(snapshots[0]))

            stages: list[tuple[str, Callable[[], object]]] = [
                ("open_first_option", lambda: page.evaluate(page_scripts.CLICK_FIRST_ROUTE)),
                ("expand_stops", lambda: page.evaluate(page_scripts.EXPAND_STOP_LISTS)),
                ("scroll", lambda: page.evaluate(page_scripts.SCROLL_TO_BOTTOM, SCROLL_STEP_PX)),
                ("inject_markers", lambda: page.evaluate(page_scripts.INJECT_EXTRACTION_MARKERS)),
            ]
            for name, action in stages:
                if deadline.expired:
                    logger.warning("Deadline reached before stage %s; keeping %d snapshots", name, len(snapshots))
                    break
                try:
                    page.set_default_timeout(deadline.remaining_ms())
                    result = action()
                    self._settle(page, name, deadline)
                    snapshots.append(page.content())
                except PlaywrightError as exc:
                    logger.warning("Stage %s failed (%s); continuing", name, exc)
                    continue
                logger.info("Stage %s: result=%s, %d chars", name, result, len(snapshots[-1]))

        best = max(snapshots, key=len)
        logger.info("Planner page fetched: %d snapshots, longest %d chars", len(snapshots), len(best))
        return best

    # ── Arrivals page ─────────────────────────────────────────────────

    def fetch_arrivals_page(self, stop_code: str) -> str:
        """Render the arrivals page for one stop and return its HTML."""
        url = build_arrivals_url(stop_code)
        deadline = _Deadline(self.arrivals_timeout_s)
        logger.info("Fetching arrivals page %s", url)

        with self._page(deadline) as page:
            try:
                page.goto(url, wait_until="domcontentloaded", timeout=deadline.remaining_ms())
                page.wait_for_selector("body", timeout=deadline.remaining_ms())
                self._settle(page, "arrivals", deadline)
                page.wait_for_selector("table", timeout=deadline.remaining_ms())
                html = page.content()
            except PlaywrightTimeoutError as exc:
                raise ScrapeTimeout(f"Arrivals table for {stop_code} not rendered in time") from exc
            except PlaywrightError as exc:
                raise ScrapeTimeout(f"Arrivals page for {stop_code} failed to load: {exc}") from exc

        logger.info("Arrivals page for %s: %d chars", stop_code, len(html))
        return html
