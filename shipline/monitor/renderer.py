"""Rich terminal renderer for pipeline runs.

Turns ``PipelineRun`` snapshots into Rich renderables: a stage table with
color-coded statuses plus a one-line summary, and a table of runs.

Color scheme
------------
- green     : succeeded
- red       : failed
- yellow    : running
- dim       : pending / skipped
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from shipline.models.runs import PipelineRun, RunStatus
from shipline.models.stages import StageStatus

_STAGE_STYLES: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageStatus.FAILED: "[bold red]FAILED[/bold red]",
    StageStatus.RUNNING: "[yellow]RUNNING[/yellow]",
    StageStatus.PENDING: "[dim]PENDING[/dim]",
    StageStatus.SKIPPED: "[dim]SKIPPED[/dim]",
}

_RUN_STYLES: dict[RunStatus, str] = {
    RunStatus.SUCCEEDED: "bold green",
    RunStatus.FAILED: "bold red",
    RunStatus.ABORTED: "bold magenta",
    RunStatus.RUNNING: "bold yellow",
}


class RunRenderer:
    """Renders runs as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_run(self, run: PipelineRun, *, chain_valid: bool | None = None) -> Panel:
        """Render one run as a Panel holding its stage table and summary."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=18)
        table.add_column("Status", min_width=10, justify="center")
        table.add_column("Details", min_width=20)

        for i, stage in enumerate(run.stages, start=1):
            details: list[str] = []
            if stage.error is not None:
                scope = f" [{', '.join(stage.error.services)}]" if stage.error.services else ""
                details.append(f"[red]{stage.error.kind.value}{scope}: {stage.error.message}[/red]")
            if stage.started_at:
                details.append(f"[dim]{stage.started_at.strftime('%H:%M:%S')}[/dim]")
            table.add_row(
                str(i),
                stage.name.value,
                _STAGE_STYLES[stage.status],
                " | ".join(details) if details else "[dim]-[/dim]",
            )

        style = _RUN_STYLES[run.status]
        summary_parts = [
            f"[bold]State:[/bold] {run.state.value}",
            f"[bold]Status:[/bold] [{style}]{run.status.value}[/{style}]",
            f"[bold]Commit:[/bold] {run.commit or '-'}",
            f"[bold]Exit:[/bold] {run.exit_code}",
        ]
        if run.artifacts:
            summary_parts.append(
                "[bold]Artifacts:[/bold] "
                + ", ".join(f"{s}@{v}" for s, v in sorted(run.artifacts.items()))
            )
        if run.staging_environment_id:
            summary_parts.append(f"[bold]Staging:[/bold] {run.staging_environment_id}")
        if chain_valid is not None:
            chain = "[green]valid[/green]" if chain_valid else "[bold red]BROKEN[/bold red]"
            summary_parts.append(f"[bold]Chain:[/bold] {chain}")

        body: list = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]
        if run.failure is not None:
            body.append(Text(f"Failure: {run.failure.describe()}", style="bold red"))

        return Panel(
            Group(*body),
            title=f"[bold]{run.run_id}[/bold] ({run.trigger_kind.value})",
            border_style="blue",
            padding=(1, 2),
        )

    def render_runs(self, runs: list[PipelineRun]) -> Table:
        table = Table(title="Pipeline Runs", header_style="bold cyan")
        table.add_column("Run", style="cyan")
        table.add_column("Trigger")
        table.add_column("Commit")
        table.add_column("State")
        table.add_column("Status", justify="center")
        for run in runs:
            style = _RUN_STYLES[run.status]
            table.add_row(
                run.run_id,
                run.trigger_kind.value,
                run.commit or "-",
                run.state.value,
                f"[{style}]{run.status.value}[/{style}]",
            )
        return table

    def print_run(self, run: PipelineRun, *, chain_valid: bool | None = None) -> None:
        self.console.print(self.render_run(run, chain_valid=chain_valid))

    def print_runs(self, runs: list[PipelineRun]) -> None:
        if not runs:
            self.console.print("[dim]No runs recorded yet.[/dim]")
            return
        self.console.print(self.render_runs(runs))
