"""Main CLI application using Typer."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer

from ..core import defaults as D
from ..core.config import Config
from ..correction.classifier import classify_failure
from ..correction.models import DecisionContext, StopReason
from ..correction.policy import generate_decision_options
from ..exceptions import ConfigError
from .commands import config
from .output import console, print_classification, print_decision_table, print_error

app = typer.Typer(
    name="repairloop",
    help="Bounded self-correction for failing tests, typechecks, lint and builds",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Register command groups
app.add_typer(config.app, name="config")


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose output"),
    ] = False,
):
    """Classify verification failures and inspect repair loop decisions.

    Examples:
        repairloop classify out.txt          # Classify saved output
        pytest 2>&1 | repairloop classify    # Classify from stdin
        repairloop options budget_exhausted  # Show the decision menu
    """
    if verbose:
        level = "DEBUG"
    else:
        try:
            level = Config.load().logging.level
        except ConfigError as e:
            print_error(str(e))
            raise typer.Exit(1)
    logging.basicConfig(level=getattr(logging, level), format=D.LOG_FORMAT)


@app.command("classify")
def classify(
    file: Annotated[
        Optional[Path],
        typer.Argument(help="File containing tool output (reads stdin when omitted)"),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the classification as JSON"),
    ] = False,
):
    """Classify test/typecheck/lint/build output."""
    if file is None or str(file) == "-":
        raw = sys.stdin.read()
    else:
        try:
            raw = file.read_text(errors="replace")
        except OSError as e:
            print_error(f"Cannot read {file}: {e}")
            raise typer.Exit(1)

    classification = classify_failure(raw)

    if as_json:
        typer.echo(json.dumps(classification.to_dict(), indent=2))
        return

    print_classification(classification)


@app.command("options")
def options(
    reason: Annotated[str, typer.Argument(help="Stop reason (e.g., budget_exhausted)")],
    pending_file: Annotated[
        Optional[list[str]],
        typer.Option("--pending-file", "-f", help="File awaiting scope approval (repeatable)"),
    ] = None,
    remaining: Annotated[
        int,
        typer.Option("--remaining", "-r", help="Repair iterations left"),
    ] = 0,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the options as JSON"),
    ] = False,
):
    """Show the decision menu offered for a stop reason."""
    try:
        stop_reason = StopReason(reason.lower())
    except ValueError:
        print_error(f"Unknown stop reason: {reason}")
        console.print(f"Available: {', '.join(r.value for r in StopReason)}")
        raise typer.Exit(1)

    decision_options = generate_decision_options(
        stop_reason,
        DecisionContext(
            repair_remaining=remaining,
            pending_scope_files=tuple(pending_file or ()),
        ),
    )

    if as_json:
        typer.echo(json.dumps([o.to_dict() for o in decision_options], indent=2))
        return

    print_decision_table(decision_options, title=f"Options for {stop_reason.value}")


if __name__ == "__main__":
    app()
