"""``shipline bootstrap``: create the persistent production environment.

Creates the production network and one database per service. Services are
deployed into it by promotions. Safe to re-run: an existing environment is
left untouched.
"""

from __future__ import annotations

import typer
from rich.panel import Panel

from shipline.cli import context
from shipline.core.errors import PipelineError
from shipline.models.runs import exit_code_for


def bootstrap_cmd() -> None:
    """Provision the production environment."""
    with context.load_orchestrator() as orchestrator:
        try:
            environment = orchestrator.bootstrap()
        except PipelineError as exc:
            context.print_pipeline_error(exc)
            raise typer.Exit(code=exit_code_for(exc.kind)) from None

    lines = [
        f"[bold]Environment:[/bold] {environment.identifier}",
        f"[bold]State:[/bold]       {environment.lifecycle_state.value}",
        f"[bold]Network:[/bold]     {environment.network_ref or '-'}",
    ]
    for name, version in sorted(environment.versions.items()):
        lines.append(f"[bold]{name}:[/bold] {version} at {environment.bindings.get(name, '-')}")
    context.console.print(
        Panel("\n".join(lines), title="[bold]Production[/bold]", border_style="green", padding=(1, 2))
    )
