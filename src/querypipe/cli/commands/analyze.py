"""``querypipe analyze``: query complexity and the optimized shape."""

from __future__ import annotations

from pathlib import Path

import typer

from querypipe.core.config import OptimizerConfig
from querypipe.core.errors import FailureError
from querypipe.operations import QueryOptimizer

from ..output import console, create_complexity_table, print_json


def analyze(
    query_file: Path = typer.Argument(
        ...,
        help="File holding the GraphQL document",
        exists=True,
        readable=True,
        dir_okay=False,
    ),
    used_field: list[str] | None = typer.Option(
        None,
        "--used-field",
        "-u",
        help="Field path the caller reads (repeatable); enables pruning",
    ),
    max_depth: int = typer.Option(10, "--max-depth", min=1, help="Truncate deeper selections"),
    operation_name: str | None = typer.Option(
        None,
        "--operation-name",
        "-o",
        help="Operation to analyze when the document holds several",
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Report query complexity and what the optimizer would remove."""
    query = query_file.read_text(encoding="utf-8")
    optimizer = QueryOptimizer(OptimizerConfig(max_depth=max_depth))
    try:
        result = optimizer.optimize(query, used_field or None, operation_name)
        recommendations = optimizer.performance_recommendations(query)
    except FailureError as e:
        console.print(f"[red]Cannot analyze query:[/red] {e}")
        raise typer.Exit(1) from None

    if json_output:
        payload = result.to_dict()
        payload["recommendations"] = recommendations
        print_json(payload)
        return

    console.print(create_complexity_table(result.original))
    if result.modified:
        console.print(create_complexity_table(result.optimized, title="Optimized"))
        console.print(f"\n[bold]Removed {len(result.fields_removed)} field(s):[/bold]")
        for path in result.fields_removed:
            console.print(f"  - {path}", markup=False)
        console.print("\n[bold]Optimized query:[/bold]")
        console.print(result.optimized_query, markup=False, highlight=False)
    else:
        console.print("\n[green]Nothing to optimize[/green]")

    if recommendations:
        console.print("\n[bold]Recommendations:[/bold]")
        for rec in recommendations:
            console.print(f"  • {rec}")
