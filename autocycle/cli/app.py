"""CLI application — Click command group for autocycle.

Global flags live on the group; subcommand modules register themselves below.
"""

from __future__ import annotations

import click

from autocycle import __version__


@click.group()
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.version_option(__version__, prog_name="autocycle")
@click.pass_context
def cli(ctx: click.Context, no_color: bool) -> None:
    """autocycle - autonomous heartbeat service."""
    ctx.ensure_object(dict)
    ctx.obj["no_color"] = no_color


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from autocycle.cli.heartbeat_cmd import start_cmd, status_cmd, stop_cmd

    cli.add_command(start_cmd)
    cli.add_command(stop_cmd)
    cli.add_command(status_cmd)


_register_subcommands()
