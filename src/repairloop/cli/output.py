"""Rich console output helpers."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from ..correction.models import DecisionOption, FailureClassification

# Shared console instance
console = Console()
error_console = Console(stderr=True)


def print_error(message: str) -> None:
    """Print an error message."""
    error_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]{message}[/green]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")


def create_table(title: str, columns: list[tuple[str, str]]) -> Table:
    """Create a styled table.

    Args:
        title: Table title
        columns: List of (name, style) tuples
    """
    table = Table(title=title, show_header=True, header_style="bold")
    for name, style in columns:
        table.add_column(name, style=style)
    return table


def print_classification(classification: FailureClassification) -> None:
    """Print a failure classification."""
    fixable = "[green]yes[/green]" if classification.is_code_fixable else "[red]no[/red]"

    console.print(f"[bold]Type:[/bold] {classification.failure_type.value}")
    console.print(f"[bold]Code-fixable:[/bold] {fixable}")
    console.print(f"[bold]Signature:[/bold] [cyan]{classification.failure_signature}[/cyan]")
    console.print(f"[bold]Summary:[/bold] {classification.summary}", markup=False)

    if classification.failing_tests:
        console.print("[bold]Failing tests:[/bold]")
        for test in classification.failing_tests:
            console.print(f"  - {test}", markup=False)

    if classification.file_references:
        console.print("[bold]Referenced files:[/bold]")
        for path in classification.file_references:
            console.print(f"  - {path}", markup=False)


def print_decision_table(options: list[DecisionOption], title: str = "Options") -> None:
    """Print a table of decision options."""
    table = create_table(
        title,
        [
            ("ID", "cyan"),
            ("Label", ""),
            ("Action", "magenta"),
            ("Default", "green"),
            ("Description", "dim"),
        ],
    )

    for option in options:
        table.add_row(
            option.id,
            option.label,
            option.action.value,
            "*" if option.is_default else "",
            option.description or "-",
        )

    console.print(table)
