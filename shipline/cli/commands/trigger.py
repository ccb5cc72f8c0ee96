"""``shipline trigger``: consume a source-control event.

A push to the integration branch builds, publishes and validates every
service on a fresh staging environment; a merge to main promotes the
matching validated run. The command exits with the run's exit code:
0 success (or validated and awaiting promotion), 1 build/test failure,
2 provisioning failure, 3 production health failure.
"""

from __future__ import annotations

from pathlib import Path

import typer

from shipline.cli import context
from shipline.core.errors import PipelineError
from shipline.models.runs import EventKind, TriggerEvent, exit_code_for
from shipline.monitor.renderer import RunRenderer


def trigger_cmd(
    branch: str = typer.Option(..., "--branch", "-b", help="Branch the event happened on."),
    commit: str = typer.Option(..., "--commit", "-c", help="Commit id of the event."),
    event: EventKind = typer.Option(
        EventKind.PUSH,
        "--event",
        "-e",
        help="Kind of source-control event.",
    ),
    source_root: Path = typer.Option(
        Path("."),
        "--source-root",
        "-s",
        help="Repository checkout the service sources resolve against.",
    ),
) -> None:
    """Run the pipeline for one push or merge event."""
    with context.load_orchestrator(source_root=source_root) as orchestrator:
        try:
            run = orchestrator.handle(
                TriggerEvent(branch=branch, commit=commit, event_kind=event)
            )
        except PipelineError as exc:
            context.print_pipeline_error(exc)
            raise typer.Exit(code=exit_code_for(exc.kind)) from None

    if run is None:
        context.console.print(
            f"[dim]No pipeline is bound to {event.value} on {branch}; nothing to do.[/dim]"
        )
        return

    RunRenderer(console=context.console).print_run(run)
    # Print the run_id plainly for scripting
    context.console.print(f"[bold]{run.run_id}[/bold]")
    raise typer.Exit(code=run.exit_code)
