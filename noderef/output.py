"""Output formatters for human-readable and JSON output."""

import json
import sys
from typing import Any

import click

from .auth.errors import AuthError, ErrorCode


def format_json(data: Any) -> str:
    """Format data as a JSON success envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(error: Exception, help_text: str | None = None) -> str:
    """Format an error as a JSON failure envelope.

    AuthErrors keep their code and details; anything else is reported as
    INTERNAL_ERROR under its exception type.
    """
    if isinstance(error, AuthError):
        payload = error.to_dict()
    else:
        payload = {
            "code": ErrorCode.INTERNAL_ERROR.value,
            "type": type(error).__name__,
            "message": str(error),
        }
    if help_text:
        payload["help"] = help_text
    return json.dumps({"success": False, "error": payload}, indent=2, default=str)


def output_human(message: str) -> None:
    """Output a human-readable message."""
    click.echo(message)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            output_human(human_message)
        else:
            output_human(json.dumps(data, indent=2, default=str))

    def status(self, message: str) -> None:
        """Progress message; goes to stderr so JSON stdout stays parseable."""
        click.secho(message, fg="cyan", err=True)

    def error(self, error: Exception, help_text: str | None = None) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output a table (human mode only, JSON mode outputs raw data)."""
        if self.json_mode:
            click.echo(format_json([dict(zip(headers, row)) for row in rows]))
            return

        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(str(cell)))

        header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
        click.secho(header_line, bold=True)
        click.echo("-" * len(header_line))

        for row in rows:
            click.echo("  ".join(str(c).ljust(widths[i]) for i, c in enumerate(row)))
