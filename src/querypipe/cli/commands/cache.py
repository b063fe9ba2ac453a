"""``querypipe cache-info``: inspect a persisted cache snapshot."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from querypipe.cache import CachePersistence, JsonFileStore, NormalizedCache
from querypipe.core.constants import CACHE_PERSISTENCE_KEY, CACHE_SCHEMA_VERSION

from ..output import (
    console,
    create_simple_table,
    format_bool,
    format_bytes,
    format_duration,
    print_json,
)


def cache_info(
    directory: Path = typer.Argument(
        ...,
        help="Directory of the JSON file store",
        exists=True,
        file_okay=False,
    ),
    key: str = typer.Option(CACHE_PERSISTENCE_KEY, "--key", "-k", help="Snapshot key"),
    schema_version: int = typer.Option(
        CACHE_SCHEMA_VERSION,
        "--schema-version",
        help="Version the application expects",
    ),
    clear: bool = typer.Option(False, "--clear", help="Delete the snapshot after showing it"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show version, age and size of a persisted cache snapshot."""
    persistence = CachePersistence(
        NormalizedCache(),
        JsonFileStore(directory),
        key=key,
        version=schema_version,
    )
    info = asyncio.run(persistence.info())

    if info is None:
        if json_output:
            print_json({"exists": False, "key": key})
        else:
            console.print(f"[yellow]No cache snapshot '{key}' in {directory}[/yellow]")
        raise typer.Exit(1)

    if json_output:
        print_json({"exists": True, "key": key, **info.to_dict()})
    else:
        table = create_simple_table()
        table.add_row("Key", key)
        table.add_row("Version", str(info.version))
        table.add_row("Compatible", format_bool(info.compatible))
        table.add_row("Age", format_duration(info.age_seconds))
        table.add_row("Stale", format_bool(not info.stale, yes="no", no="yes"))
        table.add_row("Entities", str(info.entities))
        table.add_row("Size", format_bytes(info.size_bytes))
        console.print(table)

    if clear:
        asyncio.run(persistence.clear())
        if not json_output:
            console.print("[green]Snapshot deleted[/green]")
