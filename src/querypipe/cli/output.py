"""Rich output formatting for the querypipe CLI.

Colors, table builders and formatters shared by every command, so the same
severity or status always renders the same way.
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from querypipe.core.errors import ClassifiedError, ErrorKind, Severity
from querypipe.operations import ComplexityReport

# =============================================================================
# Shared console instance
# =============================================================================

console = Console()


# =============================================================================
# Color schemes
# =============================================================================


class StatusColors:
    """Color mappings for severities and error kinds."""

    SEVERITY: dict[Severity, str] = {
        Severity.LOW: "green",
        Severity.MEDIUM: "yellow",
        Severity.HIGH: "red",
        Severity.CRITICAL: "bold red",
    }

    KIND: dict[ErrorKind, str] = {
        ErrorKind.AUTHENTICATION: "magenta",
        ErrorKind.AUTHORIZATION: "magenta",
        ErrorKind.VALIDATION: "yellow",
        ErrorKind.NETWORK: "blue",
        ErrorKind.UPLOAD: "cyan",
        ErrorKind.SUBSCRIPTION: "cyan",
        ErrorKind.CACHE: "dim",
        ErrorKind.UNKNOWN: "white",
    }

    @classmethod
    def get_severity_color(cls, severity: Severity) -> str:
        return cls.SEVERITY.get(severity, "white")

    @classmethod
    def get_kind_color(cls, kind: ErrorKind) -> str:
        return cls.KIND.get(kind, "white")


# =============================================================================
# Formatters
# =============================================================================


def format_duration(seconds: float | None) -> str:
    """Format a duration in seconds (e.g. "5.2s", "3m 12s", "1h 30m")."""
    if seconds is None:
        return "N/A"

    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def format_bytes(num_bytes: int) -> str:
    """Format bytes to a human-readable string (e.g. "128B", "1.5KB")."""
    if num_bytes < 1024:
        return f"{num_bytes}B"
    elif num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f}KB"
    else:
        return f"{num_bytes / (1024 * 1024):.1f}MB"


def format_bool(value: bool, yes: str = "yes", no: str = "no") -> str:
    return f"[green]{yes}[/green]" if value else f"[red]{no}[/red]"


def print_json(data: Any) -> None:
    """Print ``data`` as indented JSON with no markup or wrapping."""
    console.print(
        json.dumps(data, indent=2, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


# =============================================================================
# Tables and panels
# =============================================================================


def create_simple_table(show_header: bool = False) -> Table:
    """Borderless key/value table."""
    table = Table(show_header=show_header, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    return table


def create_error_panel(error: ClassifiedError, strategy: str) -> Panel:
    """Panel describing one classified error."""
    kind_color = StatusColors.get_kind_color(error.kind)
    severity_color = StatusColors.get_severity_color(error.severity)

    table = create_simple_table()
    table.add_row("Kind", f"[{kind_color}]{error.kind.value}[/{kind_color}]")
    table.add_row("Category", error.category.value)
    table.add_row("Severity", f"[{severity_color}]{error.severity.value}[/{severity_color}]")
    table.add_row("Code", error.code)
    table.add_row("Retryable", format_bool(error.retryable))
    if error.retryable:
        table.add_row("Retry delay", format_duration(error.retry_delay))
        table.add_row("Max retries", str(error.max_retries))
    table.add_row("Recovery", strategy)
    table.add_row("Message", error.user_message)

    return Panel(table, title="Classified Error", border_style=severity_color)


def create_complexity_table(
    report: ComplexityReport,
    title: str = "Query Complexity",
) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Fields", str(report.field_count))
    table.add_row("Selection sets", str(report.selection_sets))
    table.add_row("Depth", str(report.depth))
    table.add_row("Score", f"{report.score:g}")
    table.add_row("Estimated cost", f"{report.estimated_cost:g}")
    return table


__all__ = [
    "StatusColors",
    "console",
    "create_complexity_table",
    "create_error_panel",
    "create_simple_table",
    "format_bool",
    "format_bytes",
    "format_duration",
    "print_json",
]
