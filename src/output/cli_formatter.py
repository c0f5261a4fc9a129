"""Rich CLI output for itinerary options, itineraries, arrivals and schedule lookups."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.ingest.gtfs import haversine
from src.models import Coordinate, Itinerary, LightweightOption, RouteDetail, Stop, StopArrivals, TripLeg

console = Console()

_LEG_STYLES = {"walk": "dim", "bus": "bold red", "metro": "bold cyan"}


# ── URL builders ──────────────────────────────────────────────────────

def _google_maps_url(lat: float, lon: float) -> str:
    """Google Maps pin at a stop."""
    return f"https://www.google.com/maps?q={lat:.6f},{lon:.6f}"


def _transit_directions_url(origin: Coordinate, destination: Coordinate) -> str:
    """Google Maps transit directions, for comparison."""
    return (
        f"https://www.google.com/maps/dir/?api=1"
        f"&origin={origin[0]:.6f},{origin[1]:.6f}"
        f"&destination={destination[0]:.6f},{destination[1]:.6f}"
        f"&travelmode=transit"
    )


# ── Options ───────────────────────────────────────────────────────────

def print_options(origin: Coordinate, destination: Coordinate, options: list[LightweightOption]) -> None:
    """Table of the lightweight options, one row per option."""
    table = Table(
        title=f"{len(options)} options  ({origin[0]:.4f}, {origin[1]:.4f}) -> "
        f"({destination[0]:.4f}, {destination[1]:.4f})",
        title_style="bold blue",
    )
    table.add_column("#", justify="right")
    table.add_column("Routes")
    table.add_column("Duration", justify="right")
    table.add_column("Walking", justify="right")
    table.add_column("Transfers", justify="right")
    table.add_column("Summary")

    for opt in options:
        table.add_row(
            str(opt.index),
            ", ".join(opt.route_numbers),
            f"{opt.duration_min} min",
            f"{opt.walking_min} min" if opt.walking_min else "-",
            str(opt.transfers),
            opt.summary,
        )
    console.print(table)


# ── Itinerary ─────────────────────────────────────────────────────────

def _format_leg(i: int, leg: TripLeg) -> str:
    """One leg as a markup line (plus stop list for rides)."""
    style = _LEG_STYLES.get(leg.kind, "")
    line = (
        f"  {i}. [{style}]{leg.instruction}[/{style}]"
        f"  ({leg.duration_min} min, {leg.distance_km:.2f} km)"
    )
    if leg.degraded:
        line += "  [yellow](approximate geometry)[/yellow]"
    if leg.is_ride and leg.stops:
        codes = [s.code for s in leg.stops if s.code]
        shown = " > ".join(codes[:8])
        if len(codes) > 8:
            shown += f" > ... ({len(codes) - 8} more)"
        line += f"\n     [dim]{leg.stop_count} stops: {shown}[/dim]"
    return line


def print_itinerary(itinerary: Itinerary, option_index: int | None = None) -> None:
    """Panel with every leg, totals and comparison links."""
    parts: list[str] = [
        f"[bold]{itinerary.departure_time} -> {itinerary.arrival_time}[/bold]"
        f"  |  {itinerary.total_duration_min} min"
        f"  |  {itinerary.total_distance_km:.2f} km"
        f"  |  Routes: {', '.join(itinerary.route_numbers) or '-'}",
        "",
    ]
    for i, leg in enumerate(itinerary.legs, 1):
        parts.append(_format_leg(i, leg))
    parts.append("")

    if itinerary.source != "scrape":
        parts.append(f"[bold yellow]Warning: built from {itinerary.source} data, not the live planner[/bold yellow]")
    if itinerary.is_degraded:
        parts.append("[yellow]Some legs use straight-line geometry.[/yellow]")

    rides = [leg for leg in itinerary.legs if leg.is_ride and not leg.from_stop.is_synthetic]
    if rides:
        board = rides[0].from_stop
        parts.append(f"  Boarding stop:  {_google_maps_url(board.lat, board.lon)}")
    parts.append(f"  Compare:        {_transit_directions_url(itinerary.origin, itinerary.destination)}")

    title = "Itinerary" if option_index is None else f"Option #{option_index}"
    console.print(
        Panel(
            "\n".join(parts),
            title=f"[bold]{title}[/bold]",
            border_style="yellow" if itinerary.is_degraded or itinerary.source != "scrape" else "green",
        )
    )


# ── Arrivals ──────────────────────────────────────────────────────────

def print_arrivals(result: StopArrivals) -> None:
    """Arrivals table for one stop, with buses that just passed."""
    table = Table(
        title=f"{result.stop_code}  {result.stop_name}",
        caption=f"Updated {result.updated_at.strftime('%H:%M:%S')}",
        title_style="bold blue",
    )
    table.add_column("Route")
    table.add_column("Distance", justify="right")
    table.add_column("")

    for arrival in sorted(result.arrivals, key=lambda a: a.distance_km):
        table.add_row(
            arrival.route_number,
            f"{arrival.distance_km:.1f} km",
            "[yellow]next bus, previous just passed[/yellow]" if arrival.just_passed else "",
        )
    if not result.arrivals:
        console.print(f"[dim]No buses approaching {result.stop_code}.[/dim]")
    else:
        console.print(table)

    if result.passed:
        routes = ", ".join(p.route_number for p in result.passed)
        console.print(f"[bold yellow]Just passed:[/bold yellow] {routes}")


# ── Schedule lookups ──────────────────────────────────────────────────

def print_route(detail: RouteDetail) -> None:
    """Route header, stop table and the routed ride totals."""
    route, leg = detail.route, detail.leg
    table = Table(title=f"Route {route.short_name}  {route.long_name}", title_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Code")
    table.add_column("Stop")

    for i, stop in enumerate(route.stops, 1):
        table.add_row(str(i), stop.code or "-", stop.name)
    console.print(table)

    if leg is None:
        console.print(f"[yellow]Route {route.short_name} has no trip with two or more stops.[/yellow]")
        return
    line = (
        f"[bold]{leg.stop_count} stops[/bold]  |  {leg.duration_min} min"
        f"  |  {leg.distance_km:.2f} km  |  {len(leg.geometry)} geometry points"
    )
    if leg.degraded:
        line += "  [yellow](approximate geometry)[/yellow]"
    console.print(line)


def print_nearby_stops(lat: float, lon: float, stops: list[Stop], radius_m: float) -> None:
    """Nearby stops with their straight-line distance from the query point."""
    if not stops:
        console.print(f"[dim]No stops within {radius_m:.0f} m of ({lat:.4f}, {lon:.4f}).[/dim]")
        return
    table = Table(title=f"Stops near ({lat:.4f}, {lon:.4f})", title_style="bold blue")
    table.add_column("Code")
    table.add_column("Stop")
    table.add_column("Distance", justify="right")

    for stop in stops:
        table.add_row(stop.code or "-", stop.name, f"{haversine(lat, lon, stop.lat, stop.lon):.0f} m")
    console.print(table)


def print_no_options(origin: Coordinate, destination: Coordinate) -> None:
    console.print(
        Panel(
            f"No itinerary options found from ({origin[0]:.4f}, {origin[1]:.4f}) "
            f"to ({destination[0]:.4f}, {destination[1]:.4f}).\n"
            "Try 'detail --fallback-on-error' for a heuristic itinerary.",
            title="No Results",
            border_style="red",
        )
    )
