"""querypipe CLI.

Built with Typer. Global options (version, logging) live on the app
callback; each command lives in its own module under ``commands/``.

Package structure:
    cli/
    ├── __init__.py           # This file - app assembly
    ├── helpers.py            # Logging state, input parsing
    ├── output.py             # Rich formatting
    └── commands/
        ├── classify.py       # classify command
        ├── analyze.py        # analyze command
        ├── cache.py          # cache-info command
        └── query.py          # query command
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from querypipe import __version__

from .commands import analyze, cache_info, classify, query
from .helpers import apply_log_options, configure_global_logging
from .output import console

app = typer.Typer(
    name="querypipe",
    help="Resilient GraphQL request pipeline tools",
    add_completion=False,
)

LogLevel = Annotated[
    str | None,
    typer.Option(
        "--log-level",
        "-L",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
        envvar="QUERYPIPE_LOG_LEVEL",
    ),
]
LogFile = Annotated[
    Path | None,
    typer.Option("--log-file", help="Write JSON logs to this file", envvar="QUERYPIPE_LOG_FILE"),
]
LogFormat = Annotated[
    str | None,
    typer.Option(
        "--log-format",
        help="Log format: json, console, or both",
        envvar="QUERYPIPE_LOG_FORMAT",
    ),
]


def _show_version(value: bool) -> None:
    if value:
        console.print(f"querypipe v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=_show_version,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    log_level: LogLevel = None,
    log_file: LogFile = None,
    log_format: LogFormat = None,
) -> None:
    """querypipe - inspect and exercise the GraphQL request pipeline."""
    apply_log_options(log_level, log_file, log_format)
    configure_global_logging(console)


app.command()(classify)
app.command()(analyze)
app.command(name="cache-info")(cache_info)
app.command()(query)


__all__ = ["app", "console", "main"]
