"""Shared CLI state and helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import typer
from rich.console import Console

from querypipe.core.logging import configure_logging

# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """Logging options given on the app callback."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console", "both"] = "console"
    configured: bool = False


_log_config = CliLoggingConfig()


def apply_log_options(
    level: str | None = None,
    file: Path | None = None,
    fmt: str | None = None,
) -> None:
    """Record the global logging options given on the command line.

    A log file without an explicit format switches output to JSON so the
    console keeps only rich command output.
    """
    if level:
        _log_config.level = level.upper()  # type: ignore[assignment]
    if fmt:
        _log_config.format = fmt  # type: ignore[assignment]
    if file:
        _log_config.file = file
        if not fmt and _log_config.format == "console":
            _log_config.format = "json"


def configure_global_logging(console: Console) -> None:
    """Apply the collected options once per session.

    Raises:
        typer.Exit: If the options are inconsistent.
    """
    if _log_config.configured:
        return
    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
        _log_config.configured = True
    except (ValueError, AttributeError) as e:
        # format="both" without a file, or an unknown level name
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


def reset_logging_state() -> None:
    """Reset to defaults (tests)."""
    _log_config.level = "WARNING"
    _log_config.file = None
    _log_config.format = "console"
    _log_config.configured = False


# =============================================================================
# Input parsing
# =============================================================================


def parse_variables(raw: str | None, console: Console) -> dict[str, Any]:
    """Decode a ``--variables`` JSON object.

    Raises:
        typer.Exit: With code 2 when the value is not a JSON object.
    """
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --variables JSON:[/red] {e}")
        raise typer.Exit(2) from None
    if not isinstance(value, dict):
        console.print("[red]--variables must be a JSON object[/red]")
        raise typer.Exit(2)
    return value


__all__ = [
    "CliLoggingConfig",
    "apply_log_options",
    "configure_global_logging",
    "parse_variables",
    "reset_logging_state",
]
