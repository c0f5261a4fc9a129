"""Tests for real-time arrivals parsing and "just passed" detection."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from src.errors import ScrapeTimeout
from src.models import BusArrival
from src.query.arrivals import ArrivalsTracker, parse_arrivals, stop_name_from_html

ARRIVALS_HTML = """
<html><body>
<h2>Paradero PA433</h2> <p>Av. Libertador Bernardo O'Higgins / Estado</p>
<table>
  <tr><th>Recorrido</th><th>Distancia</th></tr>
  <tr><td class="td-dividido recorrido no-icon"><a class="bus">C01</a></td>
      <td class="td-right tiempo-llegada">0.3km <span>(Llegando.)</span></td></tr>
  <tr><td class="recorrido"><a class="bus">409</a></td><td>7.4 km</td></tr>
  <tr><td class="recorrido"><a class="bus">409</a></td><td>7.4 km</td></tr>
  <tr><td class="recorrido"><a class="bus">409</a></td><td>12.1 km</td></tr>
  <tr><td class="recorrido"><a class="bus">506</a></td><td>Fuera de horario</td></tr>
</table>
</body></html>
"""


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _bus(route: str, km: float) -> BusArrival:
    return BusArrival(route_number=route, distance_km=km)


def _tracker(clock=None, browser=None, store=None) -> ArrivalsTracker:
    return ArrivalsTracker(browser or MagicMock(), store, clock=clock or FakeClock())


# ═══════════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════════


class TestParseArrivals:
    def test_rows_parsed_and_deduplicated(self):
        arrivals = parse_arrivals(ARRIVALS_HTML)
        assert [(a.route_number, a.distance_km) for a in arrivals] == [
            ("C01", 0.3),
            ("409", 7.4),
            ("409", 12.1),
        ]
        assert not any(a.just_passed for a in arrivals)

    def test_empty_table(self):
        assert parse_arrivals("<table><tr><th>Recorrido</th></tr></table>") == []

    def test_stop_name_from_heading(self):
        assert stop_name_from_html(ARRIVALS_HTML) == "Av. Libertador Bernardo O'Higgins / Estado"

    def test_stop_name_missing(self):
        assert stop_name_from_html("<table></table>") is None


# ═══════════════════════════════════════════════════════════════════════
# Passed detection
# ═══════════════════════════════════════════════════════════════════════


class TestRecord:
    def test_first_poll_reports_nothing(self):
        assert _tracker().record("PA433", [_bus("506", 0.4)]) == []

    def test_close_bus_vanishes(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 1.5), _bus("210", 4.0)])
        passed = tracker.record("PA433", [_bus("210", 3.2)])
        assert [p.route_number for p in passed] == ["506"]
        assert passed[0].just_passed

    def test_far_bus_vanishing_not_passed(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 3.0)])
        assert tracker.record("PA433", []) == []

    def test_distance_jump_flags_arrival(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 0.5)])
        current = [_bus("506", 6.0)]
        passed = tracker.record("PA433", current)
        assert [p.route_number for p in passed] == ["506"]
        assert current[0].just_passed

    def test_approaching_bus_not_passed(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 0.8)])
        current = [_bus("506", 0.2)]
        assert tracker.record("PA433", current) == []
        assert not current[0].just_passed

    def test_last_row_of_a_route_is_compared(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 0.5)])
        current = [_bus("506", 0.3), _bus("506", 6.0)]
        passed = tracker.record("PA433", current)
        assert [p.route_number for p in passed] == ["506"]
        assert current[1].just_passed
        assert not current[0].just_passed

    def test_passed_not_undone_by_reappearance(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 1.0)])
        passed_n1 = tracker.record("PA433", [])
        passed_n2 = tracker.record("PA433", [_bus("506", 1.5)])

        assert [(p.route_number, p.just_passed) for p in passed_n1] == [("506", True)]
        assert passed_n2 == []
        assert [(s.route_number, s.distance_km) for s in tracker.history("PA433")] == [("506", 1.5)]

    def test_small_jump_not_passed(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 0.5)])
        assert tracker.record("PA433", [_bus("506", 4.0)]) == []

    def test_only_previous_poll_compared(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 1.0)])
        tracker.record("PA433", [_bus("506", 3.0)])
        # Vanishes now, but the last reading had it 3 km away
        assert tracker.record("PA433", []) == []

    def test_stale_sighting_ignored(self):
        clock = FakeClock()
        tracker = _tracker(clock)
        tracker.record("PA433", [_bus("506", 1.0)])
        clock.advance(11 * 60)
        assert tracker.record("PA433", []) == []

    def test_stops_tracked_independently(self):
        tracker = _tracker()
        tracker.record("PA433", [_bus("506", 1.0)])
        assert tracker.record("PC615", []) == []
        assert [p.route_number for p in tracker.record("PA433", [])] == ["506"]

    def test_history_overwritten(self):
        clock = FakeClock()
        tracker = _tracker(clock)
        tracker.record("PA433", [_bus("506", 1.0), _bus("210", 2.0)])
        clock.advance(30)
        tracker.record("PA433", [_bus("210", 1.5)])
        history = tracker.history("PA433")
        assert [(s.route_number, s.distance_km, s.seen_at) for s in history] == [("210", 1.5, 1_030.0)]

    def test_old_histories_pruned(self):
        clock = FakeClock()
        tracker = _tracker(clock)
        tracker.record("PA433", [_bus("506", 1.0)])
        clock.advance(10 * 60)
        tracker.record("PC615", [_bus("210", 2.0)])
        assert tracker.history("PA433")
        clock.advance(6 * 60)
        tracker.record("PC615", [_bus("210", 1.0)])
        assert tracker.history("PA433") == []
        assert tracker.history("PC615")


# ═══════════════════════════════════════════════════════════════════════
# get_arrivals
# ═══════════════════════════════════════════════════════════════════════


class TestGetArrivals:
    def test_store_name_and_normalized_code(self):
        browser = MagicMock()
        browser.fetch_arrivals_page.return_value = ARRIVALS_HTML
        store = MagicMock()
        store.stop_name.return_value = "Estado"

        result = _tracker(browser=browser, store=store).get_arrivals(" pa433")

        browser.fetch_arrivals_page.assert_called_once_with("PA433")
        assert result.stop_code == "PA433"
        assert result.stop_name == "Estado"
        assert len(result.arrivals) == 3
        assert result.passed == []

    def test_name_from_page_when_store_misses(self):
        browser = MagicMock()
        browser.fetch_arrivals_page.return_value = ARRIVALS_HTML
        store = MagicMock()
        store.stop_name.return_value = None

        result = _tracker(browser=browser, store=store).get_arrivals("PA433")
        assert result.stop_name == "Av. Libertador Bernardo O'Higgins / Estado"

    def test_code_as_last_resort_name(self):
        browser = MagicMock()
        browser.fetch_arrivals_page.return_value = "<table></table>"
        result = _tracker(browser=browser).get_arrivals("PA433")
        assert result.stop_name == "PA433"
        assert result.arrivals == []

    def test_passed_between_polls(self):
        browser = MagicMock()
        browser.fetch_arrivals_page.side_effect = [ARRIVALS_HTML, "<table></table>"]
        tracker = _tracker(browser=browser)

        tracker.get_arrivals("PA433")
        result = tracker.get_arrivals("PA433")
        assert [p.route_number for p in result.passed] == ["C01"]

    def test_fetch_failure_propagates(self):
        browser = MagicMock()
        browser.fetch_arrivals_page.side_effect = ScrapeTimeout("slow")
        with pytest.raises(ScrapeTimeout):
            _tracker(browser=browser).get_arrivals("PA433")


# ═══════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════


class TestConcurrentRecord:
    def test_record_same_stop_from_many_threads(self):
        clock = FakeClock()
        tracker = _tracker(clock)
        errors: list[BaseException] = []

        def worker(n: int) -> None:
            try:
                for i in range(200):
                    tracker.record("PA433", [_bus(str(400 + n), (i % 50) / 10)])
                    tracker.history("PA433")
                    # Other stops age out and get pruned meanwhile
                    tracker.record(f"PC{n}{i:03d}", [])
                    clock.advance(1)
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        history = tracker.history("PA433")
        assert len(history) == 1
        assert history[0].route_number in {str(400 + n) for n in range(8)}
