"""``querypipe classify``: show how a failure would be classified and recovered."""

from __future__ import annotations

import typer

from querypipe.core.errors import (
    ErrorClassifier,
    ErrorContext,
    Failure,
    ProtocolFailure,
    RuntimeFailure,
    TransportFailure,
)
from querypipe.execution.recovery import DEFAULT_RECOVERY_PLANS

from ..output import console, create_error_panel, print_json


def _failure_from_options(
    status: int | None,
    code: str | None,
    exception: str | None,
    message: str | None,
) -> Failure:
    given = [v for v in (status, code, exception) if v is not None]
    if len(given) != 1:
        console.print("[red]Provide exactly one of --status, --code or --exception[/red]")
        raise typer.Exit(2)
    if status is not None:
        return TransportFailure(message=message or f"HTTP {status}", status=status)
    if code is not None:
        return ProtocolFailure(code=code, message=message or code)
    raw = exception or ""
    name, sep, text = raw.partition(":")
    if not sep:
        return RuntimeFailure(name="Error", message=raw.strip())
    return RuntimeFailure(name=name.strip() or "Error", message=text.strip())


def classify(
    status: int | None = typer.Option(
        None,
        "--status",
        "-s",
        help="HTTP status of a transport failure",
    ),
    code: str | None = typer.Option(
        None,
        "--code",
        "-c",
        help="GraphQL extension code of a protocol failure",
    ),
    exception: str | None = typer.Option(
        None,
        "--exception",
        "-e",
        help="Runtime exception text, e.g. 'ConnectionError: connection refused'",
    ),
    message: str | None = typer.Option(None, "--message", "-m", help="Technical message"),
    operation: str | None = typer.Option(
        None,
        "--operation",
        help="Operation name used in the user message",
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Classify a failure and show its kind, severity and recovery strategy.

    Examples:
        querypipe classify --status 503
        querypipe classify --code TOKEN_EXPIRED
        querypipe classify --exception "TimeoutError: timed out"
    """
    failure = _failure_from_options(status, code, exception, message)
    error = ErrorClassifier().classify(failure, ErrorContext.build(operation_name=operation))
    strategy = DEFAULT_RECOVERY_PLANS[error.kind].strategy.value

    if json_output:
        payload = error.to_dict()
        payload["recovery"] = strategy
        print_json(payload)
        return

    console.print(create_error_panel(error, strategy))
