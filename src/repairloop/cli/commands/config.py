"""Configuration commands."""

from __future__ import annotations

from typing import Annotated

import typer

from ...core.config import Config
from ...exceptions import ConfigError
from ..output import console, print_error, print_info, print_success

app = typer.Typer(help="Manage configuration")


def _load() -> Config:
    try:
        return Config.load()
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("show")
def show_config(
    section: Annotated[
        str | None,
        typer.Argument(help="Section to show (self_correction, logging)"),
    ] = None,
):
    """Show the effective configuration."""
    config = _load()

    def show_self_correction():
        sc = config.self_correction
        console.print("[bold]Self-correction:[/bold]")
        console.print(f"  max_repair_iterations: {sc.max_repair_iterations}")
        console.print(f"  max_consecutive_same_failure: {sc.max_consecutive_same_failure}")
        console.print(f"  allow_auto_rerun_allowlisted_tests: {sc.allow_auto_rerun_allowlisted_tests}")
        console.print(f"  stop_on_scope_expansion_denied: {sc.stop_on_scope_expansion_denied}")
        console.print(f"  stop_on_repeated_stale_context: {sc.stop_on_repeated_stale_context}")
        console.print(f"  timeout_retry_once: {sc.timeout_retry_once}")
        console.print(f"  repair_diagnosis_timeout_ms: {sc.repair_diagnosis_timeout_ms}")
        console.print(f"  repair_diff_gen_timeout_ms: {sc.repair_diff_gen_timeout_ms}")
        console.print(f"  test_run_timeout_ms: {sc.test_run_timeout_ms}")

    def show_logging():
        console.print("[bold]Logging:[/bold]")
        console.print(f"  level: {config.logging.level}")

    sections = {
        "self_correction": show_self_correction,
        "logging": show_logging,
    }

    console.print("[cyan]Current Configuration[/cyan]\n")

    if section:
        if section.lower() in sections:
            sections[section.lower()]()
        else:
            print_error(f"Unknown section: {section}")
            console.print(f"Available: {', '.join(sections.keys())}")
            raise typer.Exit(1)
    else:
        for show_fn in sections.values():
            show_fn()
            console.print()

        if Config.USER_CONFIG_FILE.exists():
            print_info("User config file exists")
        else:
            print_info("No user config file (using defaults)")


@app.command("set")
def set_config(
    key: Annotated[str, typer.Argument(help="Config key (e.g., 'max_repair_iterations')")],
    value: Annotated[str, typer.Argument(help="Config value")],
):
    """Set a value in the user configuration file.

    Available keys:
    - max_repair_iterations: Applied diffs allowed per loop
    - max_consecutive_same_failure: Identical failures in a row before stopping
    - allow_auto_rerun_allowlisted_tests: Re-run tests after applying (true/false)
    - stop_on_scope_expansion_denied: Stop when scope is denied (true/false)
    - stop_on_repeated_stale_context: Stop when diffs keep failing to apply (true/false)
    - timeout_retry_once: Retry a timed-out stage once (true/false)
    - repair_diagnosis_timeout_ms: Diagnosis timeout
    - repair_diff_gen_timeout_ms: Diff generation timeout
    - test_run_timeout_ms: Test run timeout
    - log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    path = Config.USER_CONFIG_FILE
    try:
        config = Config.from_file(path)
        config.set_value(key.lower(), value)
        config.to_policy()
    except ConfigError as e:
        print_error(str(e))
        console.print("\nRun 'repairloop config set --help' for available keys")
        raise typer.Exit(1)

    config.save_user_config(path)
    print_success(f"Set {key} = {value}")


@app.command("path")
def config_path():
    """Show configuration file locations."""
    console.print("[bold]Paths:[/bold]")
    console.print(f"  user config: {Config.USER_CONFIG_FILE}", markup=False)
    console.print(f"  project config: {Config.PROJECT_CONFIG_FILE}", markup=False)
