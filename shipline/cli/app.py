"""Main Typer application: imports and registers all CLI commands.

Entry point: ``shipline`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from shipline.cli import context
from shipline.cli.commands.abort import abort_cmd
from shipline.cli.commands.bootstrap import bootstrap_cmd
from shipline.cli.commands.promote import promote_cmd
from shipline.cli.commands.status import runs_cmd, status_cmd
from shipline.cli.commands.trigger import trigger_cmd

app = typer.Typer(
    name="shipline",
    help="Shipline: build, stage and promote the e-commerce services.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (defaults to SHIPLINE_LOG_LEVEL).",
    ),
) -> None:
    """Configure logging before any command runs."""
    context.configure_logging(log_level or context.load_settings().log_level)


# Register subcommands
app.command(name="trigger", help="Consume a push or merge event and run its pipeline.")(trigger_cmd)
app.command(name="promote", help="Promote a validated run to production.")(promote_cmd)
app.command(name="abort", help="Abort a run before production deployment.")(abort_cmd)
app.command(name="status", help="Show the status of a run.")(status_cmd)
app.command(name="runs", help="List recorded runs.")(runs_cmd)
app.command(name="bootstrap", help="Create the persistent production environment.")(bootstrap_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
