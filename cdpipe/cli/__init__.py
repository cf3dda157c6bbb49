"""cdpipe CLI: Typer-based command-line interface.

Provides the ``cdpipe`` command with subcommands for validating pipeline
definitions, running the in-memory demo, monitoring executions and
listing recorded runs.

All output uses Rich for formatted terminal display.
"""
