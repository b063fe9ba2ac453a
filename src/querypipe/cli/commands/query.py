"""``querypipe query``: run a query file through the full pipeline."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.markup import escape

from querypipe.core.config import PipelineConfig
from querypipe.core.errors import ConfigurationError, PipelineError
from querypipe.operations import ExecutionResult, GraphQLRequest
from querypipe.pipeline import RequestPipeline

from ..helpers import parse_variables
from ..output import console, print_json


async def _run(config: PipelineConfig, request: GraphQLRequest) -> ExecutionResult:
    pipeline = RequestPipeline.from_config(config)
    try:
        return await pipeline.execute(request)
    finally:
        await pipeline.aclose()


def query(
    query_file: Path = typer.Argument(
        ...,
        help="File holding the GraphQL document",
        exists=True,
        readable=True,
        dir_okay=False,
    ),
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        "-e",
        help="GraphQL endpoint (overrides the config file)",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Pipeline YAML configuration",
        exists=True,
        readable=True,
        dir_okay=False,
    ),
    variables: str | None = typer.Option(
        None,
        "--variables",
        "-v",
        help="Operation variables as a JSON object",
    ),
    operation_name: str | None = typer.Option(
        None,
        "--operation-name",
        "-o",
        help="Operation to run when the document holds several",
    ),
) -> None:
    """Execute a query with retries, deduplication and optimization."""
    try:
        config = PipelineConfig.from_yaml(config_file) if config_file else PipelineConfig()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        raise typer.Exit(2) from None
    if endpoint:
        config = config.model_copy(
            update={"transport": config.transport.model_copy(update={"endpoint": endpoint})}
        )

    request = GraphQLRequest(
        query=query_file.read_text(encoding="utf-8"),
        variables=parse_variables(variables, console),
        operation_name=operation_name,
    )
    try:
        result = asyncio.run(_run(config, request))
    except PipelineError as e:
        console.print(f"[red]Request failed ({e.kind.value}):[/red] {escape(e.user_message)}")
        if e.redirect_to:
            console.print(f"Redirect to: {e.redirect_to}")
        raise typer.Exit(1) from None

    print_json(result.to_dict())
