"""Shipline CLI: Typer-based command-line interface.

Provides the ``shipline`` command with subcommands for consuming
source-control events, promoting validated runs, aborting runs, querying
run status and bootstrapping production.

All output uses Rich for formatted terminal display.
"""
