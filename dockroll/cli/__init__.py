"""dockroll CLI, Typer-based command-line interface.

Provides the ``dockroll`` command with subcommands for resolving and
publishing images, rolling them out to hosts, rolling back, and reading
the rollout history.

All output uses Rich for formatted terminal display.
"""
