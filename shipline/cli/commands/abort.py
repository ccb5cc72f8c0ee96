"""``shipline abort RUN_ID``: stop a run before production deployment."""

from __future__ import annotations

import typer

from shipline.cli import context
from shipline.core.errors import RunNotFoundError


def abort_cmd(
    run_id: str = typer.Argument(..., help="The run to abort."),
) -> None:
    """Abort a run. Refused once production deployment has started."""
    with context.load_orchestrator() as orchestrator:
        try:
            accepted = orchestrator.abort(run_id)
        except RunNotFoundError:
            context.console.print(f"[bold red]Run not found:[/bold red] {run_id}")
            raise typer.Exit(code=1) from None
        run = orchestrator.status(run_id)

    if not accepted:
        context.console.print(
            f"[bold red]Cannot abort {run_id}:[/bold red] it is {run.state.value}"
        )
        raise typer.Exit(code=1)

    context.console.print(f"[yellow]Abort accepted for {run_id}[/yellow] (now {run.state.value})")
