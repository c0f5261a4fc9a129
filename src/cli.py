"""CLI entry point for the Santiago transit itinerary engine."""

from __future__ import annotations

import logging
import time

import typer
from rich.console import Console

from src.config import GRAPHHOPPER_URL, NEARBY_STOP_RADIUS_M, SCHEDULE_DB_PATH
from src.errors import ExtractionIncomplete, TransitEngineError
from src.ingest.gtfs import ensure_schedule_db
from src.ingest.routing_engine import RoutingEngineClient
from src.output.cli_formatter import (
    print_arrivals,
    print_itinerary,
    print_nearby_stops,
    print_no_options,
    print_options,
    print_route,
)
from src.query.orchestrator import ItineraryEngine, open_schedule_store

app = typer.Typer(help="Santiago transit itineraries from the public planner and live arrivals.")
console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _engine() -> ItineraryEngine:
    return ItineraryEngine(store=open_schedule_store())


@app.command()
def options(
    origin_lat: float = typer.Argument(..., help="Origin latitude"),
    origin_lon: float = typer.Argument(..., help="Origin longitude"),
    dest_lat: float = typer.Argument(..., help="Destination latitude"),
    dest_lon: float = typer.Argument(..., help="Destination longitude"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """List the itinerary options the planner offers.

    Put '--' before negative coordinates:  options -- -33.45 -70.70 -33.40 -70.55
    """
    _setup_logging(verbose)
    origin, destination = (origin_lat, origin_lon), (dest_lat, dest_lon)

    with _engine() as engine:
        try:
            with console.status("Rendering planner page...", spinner="dots"):
                found = engine.get_lightweight_options(origin, destination)
        except ExtractionIncomplete:
            print_no_options(origin, destination)
            raise typer.Exit(1)
        except TransitEngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    print_options(origin, destination, found)


@app.command()
def detail(
    origin_lat: float = typer.Argument(..., help="Origin latitude"),
    origin_lon: float = typer.Argument(..., help="Origin longitude"),
    dest_lat: float = typer.Argument(..., help="Destination latitude"),
    dest_lon: float = typer.Argument(..., help="Destination longitude"),
    option: int = typer.Option(0, "--option", "-n", help="Option index from 'options'"),
    fallback_on_error: bool = typer.Option(
        False, "--fallback-on-error", help="Print a heuristic itinerary if the planner fails"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Print the full itinerary for one option."""
    _setup_logging(verbose)
    origin, destination = (origin_lat, origin_lon), (dest_lat, dest_lon)

    with _engine() as engine:
        try:
            with console.status(f"Building itinerary for option {option}...", spinner="dots"):
                itinerary = engine.get_detailed_itinerary(origin, destination, option)
        except TransitEngineError as e:
            if not fallback_on_error:
                console.print(f"[red]Error:[/red] {e}")
                raise typer.Exit(1)
            console.print(f"[yellow]Planner failed ({e}); using fallback route.[/yellow]")
            itinerary = engine.get_fallback_itinerary(origin, destination)

    print_itinerary(itinerary, option)


@app.command()
def arrivals(
    stop_code: str = typer.Argument(..., help="Stop code, e.g. PA433"),
    watch: float = typer.Option(0, "--watch", "-w", help="Poll every N seconds until interrupted"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show buses approaching a stop."""
    _setup_logging(verbose)

    with _engine() as engine:
        try:
            while True:
                with console.status(f"Fetching arrivals for {stop_code}...", spinner="dots"):
                    result = engine.get_arrivals(stop_code)
                print_arrivals(result)
                if watch <= 0:
                    break
                time.sleep(watch)
        except TransitEngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        except KeyboardInterrupt:
            pass


@app.command()
def route(
    route_number: str = typer.Argument(..., help="Route number, e.g. 506 or L1"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show a route's stops and its routed geometry from the schedule database."""
    _setup_logging(verbose)

    with _engine() as engine:
        try:
            with console.status(f"Routing {route_number} stop by stop...", spinner="dots"):
                found = engine.get_route(route_number)
        except TransitEngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    print_route(found)


@app.command()
def nearby(
    lat: float = typer.Argument(..., help="Latitude"),
    lon: float = typer.Argument(..., help="Longitude"),
    radius: float = typer.Option(NEARBY_STOP_RADIUS_M, "--radius", "-r", help="Search radius in meters"),
    limit: int = typer.Option(10, "--limit", "-l", help="Maximum number of stops"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """List the stops nearest to a point.

    Put '--' before negative coordinates:  nearby -- -33.45 -70.66
    """
    _setup_logging(verbose)

    with _engine() as engine:
        try:
            stops = engine.get_nearby_stops(lat, lon, radius_m=radius, limit=limit)
        except TransitEngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    print_nearby_stops(lat, lon, stops, radius)


@app.command("build-db")
def build_db(
    force: bool = typer.Option(False, "--force", "-f", help="Rebuild even if the database exists"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Download the GTFS feed and build the schedule database."""
    _setup_logging(verbose)
    try:
        with console.status("Building schedule database...", spinner="dots"):
            db_path = ensure_schedule_db(force=force)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if verbose:
            console.print_exception()
        raise typer.Exit(1)
    console.print(f"Schedule database ready: {db_path}")


@app.command()
def health(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Check the routing engine and the schedule database."""
    _setup_logging(verbose)
    ok = True

    if RoutingEngineClient().health_check():
        console.print(f"[green]OK[/green]   routing engine {GRAPHHOPPER_URL}")
    else:
        console.print(f"[red]FAIL[/red] routing engine {GRAPHHOPPER_URL}")
        ok = False

    if SCHEDULE_DB_PATH.exists():
        console.print(f"[green]OK[/green]   schedule database {SCHEDULE_DB_PATH}")
    else:
        console.print(f"[red]FAIL[/red] schedule database {SCHEDULE_DB_PATH} (run 'build-db')")
        ok = False

    if not ok:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
