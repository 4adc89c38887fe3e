#!/usr/bin/env python
"""
GPS Tracking Main Entry Point

Reads vehicle locations from GPS provider portals.

Usage:
    # Locate one vehicle
    python main.py track --provider satrack --plate ABC123 --username user --password secret

    # Track every vehicle in a roster file through the Prefect flow
    python main.py run --roster vehicles.json

    # Locate one plate from a roster file
    python main.py status --plate ABC123 --roster vehicles.json

    # List configured providers
    python main.py providers
"""

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from pydantic import SecretStr, TypeAdapter, ValidationError
from rich.console import Console
from rich.table import Table

load_dotenv()

from config import get_settings
from models.location import LocationRecord, TrackingStatus, VehicleAssignment
from scrapers.base.exceptions import TrackingError
from scrapers.providers import available_providers
from utils.logging import get_logger

logger = get_logger(__name__)

app = typer.Typer(help="GPS tracking - read vehicle locations from provider portals")
console = Console()


def load_roster(path: Path) -> List[VehicleAssignment]:
    """Read a JSON list of vehicle assignments, exiting on invalid content."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return TypeAdapter(List[VehicleAssignment]).validate_python(json.load(f))
    except (json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]Invalid roster file: {e}[/red]")
        raise typer.Exit(1)


def print_record(record: LocationRecord) -> None:
    table = Table(title=f"{record.plate} ({record.provider})")
    table.add_column("Field")
    table.add_column("Value")
    for field, value in record.model_dump(mode="json").items():
        if value not in (None, ""):
            table.add_row(field, str(value))
    console.print(table)


@app.command("track")
def track(
    provider: str = typer.Option(..., "--provider", help="Provider name, e.g. detektor"),
    plate: str = typer.Option(..., "--plate", help="Vehicle plate"),
    username: str = typer.Option(..., "--username", envvar="TRACKING_USERNAME", help="Portal user"),
    password: str = typer.Option(
        ..., "--password", envvar="TRACKING_PASSWORD", hide_input=True, help="Portal password"
    ),
    headed: bool = typer.Option(False, "--headed", help="Show the browser window"),
    save: bool = typer.Option(True, "--save/--no-save", help="Append the fix to the locations file"),
):
    """Locate a single vehicle and print its position."""
    from flows.track_vehicles import locate_vehicle
    from storage.location_repository import JsonLinesLocationRepository

    settings = get_settings()
    if headed:
        settings = settings.model_copy(
            update={"browser": settings.browser.model_copy(update={"headless": False})}
        )
    assignment = VehicleAssignment(
        plate=plate, provider=provider, username=username, password=SecretStr(password)
    )

    console.print(f"[bold blue]Locating {plate} on {provider}[/bold blue]")
    try:
        record = asyncio.run(locate_vehicle(assignment, settings=settings))
    except KeyboardInterrupt:
        console.print("\n[yellow]Tracking interrupted by user[/yellow]")
        raise typer.Exit(1)
    except TrackingError as e:
        console.print(f"\n[red]{e.kind.value}: {e}[/red]")
        raise typer.Exit(2)

    if record is None:
        console.print(f"\n[red]{TrackingStatus.AUTH_ERROR.value}[/red]")
        raise typer.Exit(2)

    if save:
        JsonLinesLocationRepository(settings.locations_file).save(record)
    print_record(record)


@app.command("run")
def run(
    roster: Path = typer.Option(..., "--roster", exists=True, readable=True, help="JSON list of vehicles"),
    locations_file: Optional[Path] = typer.Option(None, "--output", help="Locations JSON-lines file"),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Operator identity for the audit log"),
):
    """Track every vehicle in a roster file.

    The roster is a JSON list of objects with plate, provider, username and
    password.
    """
    from flows.track_vehicles import track_vehicles_flow

    assignments = load_roster(roster)
    console.print(f"[bold blue]Tracking {len(assignments)} vehicles[/bold blue]")
    try:
        summary = asyncio.run(
            track_vehicles_flow(
                assignments,
                user_id=user_id,
                locations_file=str(locations_file) if locations_file else None,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Tracking interrupted by user[/yellow]")
        raise typer.Exit(1)

    table = Table(title="Tracking results")
    for column in ("Plate", "Provider", "Status", "Latitude", "Longitude"):
        table.add_column(column)
    for result in summary["results"]:
        colour = "green" if result["success"] else "red"
        table.add_row(
            result["plate"],
            result["provider"],
            f"[{colour}]{result['status']}[/{colour}]",
            "" if result["latitude"] is None else str(result["latitude"]),
            "" if result["longitude"] is None else str(result["longitude"]),
        )
    console.print(table)
    console.print(f"Located {summary['succeeded']}/{summary['total']} vehicles")
    if summary["failed"]:
        raise typer.Exit(3)


@app.command("status")
def status(
    plate: str = typer.Option(..., "--plate", help="Vehicle plate"),
    roster: Path = typer.Option(..., "--roster", exists=True, readable=True, help="JSON list of vehicles"),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Operator identity for the audit log"),
):
    """Locate one plate with the credentials from a roster file and store the fix."""
    from flows.track_vehicles import get_vehicle_status
    from storage.location_repository import JsonLinesLocationRepository

    assignments = load_roster(roster)
    settings = get_settings()
    repository = JsonLinesLocationRepository(settings.locations_file)
    try:
        record = asyncio.run(
            get_vehicle_status(plate, assignments, repository, user_id=user_id, settings=settings)
        )
    except TrackingError as e:
        console.print(f"\n[red]{e.kind.value}: {e}[/red]")
        raise typer.Exit(2)

    if record is None:
        console.print(f"[red]{plate} is not in the roster or the login was rejected[/red]")
        raise typer.Exit(2)
    print_record(record)


@app.command("providers")
def providers():
    """List supported providers and their configuration."""
    settings = get_settings()
    table = Table(title="Providers")
    for column in ("Key", "Name", "Base URL", "Enabled", "Retries", "Deadline"):
        table.add_column(column)
    for key in available_providers():
        provider_settings = settings.providers[key]
        table.add_row(
            key,
            provider_settings.name,
            provider_settings.base_url or "[yellow]not set[/yellow]",
            "yes" if provider_settings.enabled else "no",
            str(provider_settings.max_retry_attempts),
            str(provider_settings.call_deadline_seconds or "-"),
        )
    console.print(table)


if __name__ == "__main__":
    app()
