"""``shipline promote``: human-gated promotion to production.

Either continues a run that is awaiting promotion, or promotes an explicit
set of versions (``--set product=<version>``). Only versions that passed
acceptance on staging can reach production.
"""

from __future__ import annotations

import typer

from shipline.cli import context
from shipline.core.errors import PipelineError, RunNotFoundError
from shipline.models.runs import exit_code_for
from shipline.monitor.renderer import RunRenderer


def _parse_versions(pairs: list[str]) -> dict[str, str]:
    versions: dict[str, str] = {}
    for pair in pairs:
        service, sep, version = pair.partition("=")
        if not sep or not service or not version:
            raise typer.BadParameter(f"Expected SERVICE=VERSION, got {pair!r}", param_hint="--set")
        versions[service] = version
    return versions


def promote_cmd(
    run_id: str = typer.Argument(None, help="Run awaiting promotion."),
    versions: list[str] = typer.Option(
        None,
        "--set",
        help="Promote SERVICE=VERSION instead of a run (repeatable).",
    ),
    commit: str = typer.Option("", "--commit", "-c", help="Commit recorded on a --set promotion."),
) -> None:
    """Promote a validated run (or explicit versions) to production."""
    if not run_id and not versions:
        raise typer.BadParameter("Give a RUN_ID or at least one --set SERVICE=VERSION")
    if run_id and versions:
        raise typer.BadParameter("RUN_ID and --set are mutually exclusive")

    parsed = _parse_versions(versions or [])
    with context.load_orchestrator() as orchestrator:
        try:
            if run_id:
                run = orchestrator.promote(run_id)
            else:
                run = orchestrator.promote_versions(parsed, commit=commit)
        except RunNotFoundError:
            context.console.print(f"[bold red]Run not found:[/bold red] {run_id}")
            raise typer.Exit(code=1) from None
        except PipelineError as exc:
            context.print_pipeline_error(exc)
            raise typer.Exit(code=exit_code_for(exc.kind)) from None

    RunRenderer(console=context.console).print_run(run)
    raise typer.Exit(code=run.exit_code)
