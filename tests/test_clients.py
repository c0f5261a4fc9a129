"""Tests for the outbound clients: routing engine, geocoder and browser.

Nothing here touches the network or launches Chromium; ``requests.get``
and ``sync_playwright`` are patched at the module boundary.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from src.errors import BrowserUnavailable, GeometryUnavailable, ScrapeTimeout
from src.ingest import geocode
from src.ingest.geocode import reverse_geocode
from src.ingest.routing_engine import RoutingEngineClient, translate_instruction
from src.scrape.browser import BrowserController

GH_PATH = {
    "distance": 120.5,
    "time": 90_000,
    "points": {"coordinates": [[-70.7000, -33.4505], [-70.6995, -33.4502], [-70.7000, -33.4500]]},
    "instructions": [
        {"text": "Turn left onto Avenida Matta", "interval": [0, 1]},
        {"text": "Arrive at destination", "interval": [2, 2]},
    ],
}


def _response(payload: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    return resp


# ═══════════════════════════════════════════════════════════════════════
# Instruction translation
# ═══════════════════════════════════════════════════════════════════════


class TestTranslateInstruction:
    def test_turn_onto(self):
        assert translate_instruction("Turn left onto Avenida Matta") == "Gira a la izquierda por Avenida Matta"

    def test_sharp_turn(self):
        assert translate_instruction("Turn sharp right") == "Gira fuertemente a la derecha"

    def test_slight_turn(self):
        assert translate_instruction("turn slight left") == "Gira ligeramente a la izquierda"

    def test_head_cardinal(self):
        assert translate_instruction("Head north") == "Dirígete al norte"

    def test_continue(self):
        assert translate_instruction("Continue onto Alameda") == "Continúa por Alameda"

    def test_roundabout(self):
        assert translate_instruction("At roundabout, take exit 2") == "En la rotonda, toma la salida 2"

    def test_arrive(self):
        assert translate_instruction("Arrive at destination") == "Llegas a tu destino"

    def test_spanish_passes_through(self):
        assert translate_instruction("  gira a la  derecha ") == "Gira a la derecha"


# ═══════════════════════════════════════════════════════════════════════
# RoutingEngineClient
# ═══════════════════════════════════════════════════════════════════════


class TestRoutingEngineClient:
    @patch("src.ingest.routing_engine.requests.get")
    def test_walk_route(self, mock_get):
        mock_get.return_value = _response({"paths": [GH_PATH]})
        route = RoutingEngineClient("http://gh:8989/", timeout_s=5).walk_route(-33.4505, -70.7, -33.45, -70.7)

        assert route.distance_m == 120.5
        assert route.duration_s == 90.0
        assert route.coordinates[0] == (-70.7000, -33.4505)
        assert len(route.coordinates) == 3
        assert route.instructions == ["Gira a la izquierda por Avenida Matta", "Llegas a tu destino"]
        assert route.instruction_intervals == [(0, 1), (2, 2)]

        args, kwargs = mock_get.call_args
        assert args[0] == "http://gh:8989/route"
        assert kwargs["timeout"] == 5
        params = kwargs["params"]
        assert ("point", "-33.4505,-70.7") in params
        assert ("profile", "foot") in params
        assert ("points_encoded", "false") in params

    @patch("src.ingest.routing_engine.requests.get")
    def test_walk_route_summary_only(self, mock_get):
        mock_get.return_value = _response({"paths": [GH_PATH]})
        route = RoutingEngineClient().walk_route(-33.4505, -70.7, -33.45, -70.7, detailed=False)
        assert route.coordinates == []
        assert route.instructions == []
        assert ("instructions", "false") in mock_get.call_args.kwargs["params"]

    @patch("src.ingest.routing_engine.requests.get")
    def test_vehicle_and_metro_profiles(self, mock_get):
        mock_get.return_value = _response({"paths": [GH_PATH]})
        client = RoutingEngineClient()

        client.vehicle_route(-33.45, -70.70, -33.45, -70.69)
        assert ("profile", "bus") in mock_get.call_args.kwargs["params"]
        client.metro_route(-33.45, -70.70, -33.45, -70.69)
        assert ("profile", "metro") in mock_get.call_args.kwargs["params"]

    @patch("src.ingest.routing_engine.requests.get")
    def test_no_path(self, mock_get):
        mock_get.return_value = _response({"paths": []})
        with pytest.raises(GeometryUnavailable):
            RoutingEngineClient().vehicle_route(-33.45, -70.70, -33.45, -70.69)

    @patch("src.ingest.routing_engine.requests.get")
    def test_transport_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(GeometryUnavailable):
            RoutingEngineClient().walk_route(-33.45, -70.70, -33.45, -70.69)

    @patch("src.ingest.routing_engine.requests.get")
    def test_http_error(self, mock_get):
        resp = _response({"message": "Cannot find point"}, status=400)
        resp.raise_for_status.side_effect = requests.HTTPError("400")
        mock_get.return_value = resp
        with pytest.raises(GeometryUnavailable):
            RoutingEngineClient().walk_route(-33.45, -70.70, -33.45, -70.69)

    @patch("src.ingest.routing_engine.requests.get")
    def test_invalid_json(self, mock_get):
        resp = _response({})
        resp.json.side_effect = ValueError("not json")
        mock_get.return_value = resp
        with pytest.raises(GeometryUnavailable):
            RoutingEngineClient().walk_route(-33.45, -70.70, -33.45, -70.69)

    @patch("src.ingest.routing_engine.requests.get")
    def test_health_check(self, mock_get):
        mock_get.return_value = _response({}, status=200)
        assert RoutingEngineClient().health_check()
        mock_get.side_effect = requests.ConnectionError("refused")
        assert not RoutingEngineClient().health_check()


# ═══════════════════════════════════════════════════════════════════════
# Reverse geocoding
# ═══════════════════════════════════════════════════════════════════════


class TestReverseGeocode:
    @pytest.fixture(autouse=True)
    def _clear_cache(self):
        geocode._name_cache.clear()
        yield
        geocode._name_cache.clear()

    @patch("src.ingest.geocode.requests.get")
    def test_first_component(self, mock_get):
        mock_get.return_value = _response(
            {"display_name": "Costanera Center, Avenida Andrés Bello, Providencia, Santiago"}
        )
        assert reverse_geocode(-33.4173, -70.6064, "Destino") == "Costanera Center"
        headers = mock_get.call_args.kwargs["headers"]
        assert headers["User-Agent"]

    @patch("src.ingest.geocode.requests.get")
    def test_cached_by_rounded_coordinates(self, mock_get):
        mock_get.return_value = _response({"display_name": "Plaza de Armas, Santiago"})
        reverse_geocode(-33.43780, -70.65050, "Origen")
        assert reverse_geocode(-33.43781, -70.65051, "Origen") == "Plaza de Armas"
        assert mock_get.call_count == 1

    @patch("src.ingest.geocode.requests.get")
    def test_failure_returns_fallback_uncached(self, mock_get):
        mock_get.side_effect = requests.Timeout("slow")
        assert reverse_geocode(-33.4378, -70.6505, "Origen") == "Origen"
        assert reverse_geocode(-33.4378, -70.6505, "Origen") == "Origen"
        assert mock_get.call_count == 2

    @patch("src.ingest.geocode.requests.get")
    def test_empty_name_returns_fallback(self, mock_get):
        mock_get.return_value = _response({"error": "Unable to geocode"})
        assert reverse_geocode(-33.4378, -70.6505, "Destino") == "Destino"


# ═══════════════════════════════════════════════════════════════════════
# BrowserController
# ═══════════════════════════════════════════════════════════════════════


def _playwright_mocks(mock_sync_playwright):
    pw = MagicMock()
    mock_sync_playwright.return_value.start.return_value = pw
    browser = pw.chromium.launch.return_value
    page = browser.new_context.return_value.new_page.return_value
    return pw, browser, page


class TestBrowserController:
    @patch("src.scrape.browser.sync_playwright")
    def test_longest_snapshot_returned(self, mock_sync_playwright):
        pw, browser, page = _playwright_mocks(mock_sync_playwright)
        page.content.side_effect = ["<a>", "<a>expanded</a>", "<b>", "<c>", "<d>"]

        html = BrowserController(settle_scale=0).fetch_rendered_page("Origen", "Destino", (-33.45, -70.7), (-33.42, -70.6))

        assert html == "<a>expanded</a>"
        assert page.evaluate.call_count == 4
        page.wait_for_timeout.assert_not_called()
        browser.close.assert_called_once()
        pw.stop.assert_called_once()

    @patch("src.scrape.browser.sync_playwright")
    def test_failed_stage_skipped(self, mock_sync_playwright):
        _, _, page = _playwright_mocks(mock_sync_playwright)
        page.evaluate.side_effect = PlaywrightError("Execution context was destroyed")
        page.content.return_value = "<html>first</html>"

        html = BrowserController(settle_scale=0).fetch_rendered_page("Origen", "Destino", (-33.45, -70.7), (-33.42, -70.6))
        assert html == "<html>first</html>"
        assert page.content.call_count == 1

    @patch("src.scrape.browser.sync_playwright")
    def test_list_never_visible(self, mock_sync_playwright):
        pw, browser, page = _playwright_mocks(mock_sync_playwright)
        page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 90000ms exceeded")

        with pytest.raises(ScrapeTimeout):
            BrowserController(settle_scale=0).fetch_rendered_page("Origen", "Destino", (-33.45, -70.7), (-33.42, -70.6))
        browser.close.assert_called_once()
        pw.stop.assert_called_once()

    @patch("src.scrape.browser.sync_playwright")
    def test_launch_failure(self, mock_sync_playwright):
        pw, _, _ = _playwright_mocks(mock_sync_playwright)
        pw.chromium.launch.side_effect = PlaywrightError("Executable doesn't exist")

        with pytest.raises(BrowserUnavailable):
            BrowserController().fetch_rendered_page("Origen", "Destino", (-33.45, -70.7), (-33.42, -70.6))
        pw.stop.assert_called_once()

    @patch("src.scrape.browser.sync_playwright")
    def test_expired_deadline_skips_stages(self, mock_sync_playwright):
        _, _, page = _playwright_mocks(mock_sync_playwright)
        page.content.return_value = "<html></html>"

        BrowserController(timeout_s=0, settle_scale=0).fetch_rendered_page(
            "Origen", "Destino", (-33.45, -70.7), (-33.42, -70.6),
        )
        page.evaluate.assert_not_called()
        # Playwright reads a zero timeout as "no timeout"
        assert page.goto.call_args.kwargs["timeout"] >= 1

    @patch("src.scrape.browser.sync_playwright")
    def test_settle_waits_scaled(self, mock_sync_playwright):
        _, _, page = _playwright_mocks(mock_sync_playwright)
        page.content.return_value = "<html></html>"

        BrowserController(settle_scale=0.5).fetch_arrivals_page("PA433")
        page.wait_for_timeout.assert_called_once_with(2000.0)

    @patch("src.scrape.browser.sync_playwright")
    def test_arrivals_page(self, mock_sync_playwright):
        _, browser, page = _playwright_mocks(mock_sync_playwright)
        page.content.return_value = "<table></table>"

        html = BrowserController(settle_scale=0).fetch_arrivals_page("pa433")

        assert html == "<table></table>"
        assert page.goto.call_args.args[0].endswith("?codsimt=PA433")
        browser.close.assert_called_once()

    @patch("src.scrape.browser.sync_playwright")
    def test_arrivals_table_missing(self, mock_sync_playwright):
        _, _, page = _playwright_mocks(mock_sync_playwright)
        page.wait_for_selector.side_effect = [None, PlaywrightTimeoutError("Timeout 30000ms exceeded")]

        with pytest.raises(ScrapeTimeout):
            BrowserController(settle_scale=0).fetch_arrivals_page("PA433")

    @patch("src.scrape.browser.sync_playwright")
    def test_page_open_failure(self, mock_sync_playwright):
        pw, browser, _ = _playwright_mocks(mock_sync_playwright)
        browser.new_context.side_effect = PlaywrightError("Target page, context or browser has been closed")

        with pytest.raises(BrowserUnavailable):
            BrowserController().fetch_arrivals_page("PA433")
        browser.close.assert_called_once()
        pw.stop.assert_called_once()

    @patch("src.scrape.browser.sync_playwright")
    def test_default_timeout_bounded_by_deadline(self, mock_sync_playwright):
        _, _, page = _playwright_mocks(mock_sync_playwright)
        page.content.return_value = "<html></html>"

        BrowserController(timeout_s=60, settle_scale=0).fetch_rendered_page(
            "Origen", "Destino", (-33.45, -70.7), (-33.42, -70.6),
        )
        # Once on open, then once before each of the four stages
        timeouts = [c.args[0] for c in page.set_default_timeout.call_args_list]
        assert len(timeouts) == 5
        assert all(1 <= t <= 60_000 for t in timeouts)
        assert timeouts == sorted(timeouts, reverse=True)
