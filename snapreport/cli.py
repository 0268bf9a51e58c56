"""CLI entry point for snapreport."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from snapreport.api.client import ApiRequestError, set_debug_dir
from snapreport.models.config import SnapConfig, find_config_file
from snapreport.models.environment import RunEnvironment
from snapreport.models.job import JobStateError
from snapreport.orchestrator import Orchestrator

console = Console()

DEBUG_DIR = Path(".snapreport-tmp") / "debug"

# Failures that end a run with exit code 1 rather than a traceback
RUN_ERRORS = (ApiRequestError, JobStateError, ValueError, TypeError, OSError)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


RUN_OPTIONS = [
    click.option("--config", "-c", default=None, help="Config file path"),
    click.option("--before-sha", default=None, help="Baseline commit (defaults to SNAPREPORT_PREVIOUS_SHA)"),
    click.option("--after-sha", default=None, help="Commit being tested (defaults to SNAPREPORT_CURRENT_SHA)"),
    click.option("--link", default=None, help="URL of the change under test"),
    click.option("--message", default=None, help="Description of the change under test"),
    click.option("--nonce", default=None, help="Correlation token shared by parallel runs"),
]


def run_options(func):
    """Options shared by every command that talks to the remote service."""
    for option in reversed(RUN_OPTIONS):
        func = option(func)
    return func


def _build_orchestrator(
    config: str | None,
    before_sha: str | None,
    after_sha: str | None,
    link: str | None,
    message: str | None,
    nonce: str | None,
) -> Orchestrator:
    config_path = find_config_file(config)
    try:
        cfg = SnapConfig.load(config_path)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config_path}[/red]")
        sys.exit(1)
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Invalid config file {config_path}:[/red] {escape(str(e))}")
        sys.exit(1)

    try:
        environment = RunEnvironment.from_env(
            before_sha=before_sha, after_sha=after_sha, link=link, message=message, nonce=nonce
        )
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    if environment.debug_mode:
        set_debug_dir(DEBUG_DIR)

    return Orchestrator(cfg, environment, config_path=config_path)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Collect visual snapshots and coordinate comparison reports."""
    setup_logging(verbose or bool(os.environ.get("SNAPREPORT_DEBUG")))


@cli.command()
@run_options
def run(**options) -> None:
    """Package and dispatch a static site or page list: start → dispatch → report → compare."""
    orchestrator = _build_orchestrator(**options)
    try:
        exit_code = orchestrator.run()
    except RUN_ERRORS as e:
        console.print(f"[red]Run failed:[/red] {escape(str(e))}")
        sys.exit(1)
    if exit_code == 0:
        console.print("[bold green]Run complete[/bold green]")
    sys.exit(exit_code)


@cli.command(context_settings={"ignore_unknown_options": True})
@run_options
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def e2e(command: tuple[str, ...], **options) -> None:
    """Run a test command and aggregate the snapshots its processes report.

    Usage: snapreport e2e -- npx playwright test
    """
    if not command:
        console.print("[red]Missing command. Usage: snapreport e2e -- <command>[/red]")
        sys.exit(1)

    orchestrator = _build_orchestrator(**options)
    try:
        exit_code = orchestrator.run_e2e(list(command))
    except RUN_ERRORS as e:
        console.print(f"[red]Failed to run {' '.join(command)}:[/red] {escape(str(e))}")
        sys.exit(1)
    sys.exit(exit_code)


@cli.command()
@run_options
@click.option("--skipped-examples", default=None, help="JSON array of {component, variant, target}")
def finalize(skipped_examples: str | None, **options) -> None:
    """Finalize a report built by several runs sharing one nonce."""
    orchestrator = _build_orchestrator(**options)
    try:
        orchestrator.finalize(skipped_examples)
    except RUN_ERRORS as e:
        console.print(f"[red]Failed to finalize report:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print("[bold green]Report finalized[/bold green]")


if __name__ == "__main__":
    cli()
