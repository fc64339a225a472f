"""retour CLI — Typer-based command-line interface.

Provides the ``retour`` command with subcommands for creating runs,
driving phase transitions, inspecting jobs and learned rules, running
the decay sweep, and recording human decisions on blocked jobs.

All output uses Rich for formatted terminal display.
"""
