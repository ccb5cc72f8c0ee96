"""Shared wiring for CLI commands: settings, logging and the orchestrator."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from shipline.config import PipelineSettings
from shipline.core.errors import PipelineError
from shipline.core.orchestrator import DeploymentOrchestrator
from shipline.core.run_ledger import RunLedger
from shipline.models.runs import exit_code_for

console = Console()


def load_settings() -> PipelineSettings:
    """Read settings fresh from the environment and .env file."""
    return PipelineSettings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def print_pipeline_error(exc: PipelineError) -> None:
    console.print(f"[bold red]{exc.kind.value}:[/bold red] {exc.message}")


@contextmanager
def load_orchestrator(source_root: Path = Path(".")) -> Iterator[DeploymentOrchestrator]:
    """Orchestrator for one command; its HTTP clients are closed on exit.

    Misconfiguration (e.g. Azure without a database password) exits with
    the error kind's exit code before anything runs.
    """
    try:
        orchestrator = DeploymentOrchestrator.from_settings(
            load_settings(), source_root=source_root
        )
    except PipelineError as exc:
        print_pipeline_error(exc)
        raise typer.Exit(code=exit_code_for(exc.kind)) from None
    with orchestrator:
        yield orchestrator


def open_ledger() -> RunLedger | None:
    """Open the configured ledger, or None if no run was ever recorded."""
    path = load_settings().ledger_path
    if not path.exists():
        return None
    return RunLedger(path)
