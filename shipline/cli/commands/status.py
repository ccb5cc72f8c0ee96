"""``shipline status RUN_ID`` and ``shipline runs``: operator run queries.

Both are read-only projections over the run ledger, so they see runs
started by any process.
"""

from __future__ import annotations

import typer

from shipline.cli import context
from shipline.monitor.projection import RunProjection
from shipline.monitor.renderer import RunRenderer


def status_cmd(
    run_id: str = typer.Argument(..., help="The run to show."),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the ledger hash chain of the run.",
    ),
) -> None:
    """Show the stages and outcome of a run."""
    ledger = context.open_ledger()
    if ledger is None:
        context.console.print("[bold red]No ledger found.[/bold red]")
        context.console.print("[dim]Start a run first with: shipline trigger[/dim]")
        raise typer.Exit(code=1)

    projection = RunProjection(ledger)
    run = projection.restore(run_id)
    if run is None:
        context.console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        known = projection.run_ids()
        if known:
            context.console.print("\n[bold]Available runs:[/bold]")
            for rid in known[:10]:
                context.console.print(f"  [cyan]{rid}[/cyan]")
            if len(known) > 10:
                context.console.print(f"  [dim]... and {len(known) - 10} more[/dim]")
        raise typer.Exit(code=1)

    chain_valid = projection.chain_valid(run_id) if verify_chain else None
    RunRenderer(console=context.console).print_run(run, chain_valid=chain_valid)
    if chain_valid is False:
        raise typer.Exit(code=1)


def runs_cmd() -> None:
    """List every recorded run, most recent first."""
    renderer = RunRenderer(console=context.console)
    ledger = context.open_ledger()
    if ledger is None:
        renderer.print_runs([])
        return
    projection = RunProjection(ledger)
    runs = [projection.restore(run_id) for run_id in projection.run_ids()]
    renderer.print_runs([r for r in runs if r is not None])
