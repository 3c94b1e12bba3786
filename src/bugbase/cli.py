"""CLI for the bugbase tracker.

Convention-based: discovers .bugbase/ by walking up from cwd. Commands that
change tracker state run as the user named with ``--as``.

Usage:
    bugbase init                                     # Initialize .bugbase/ in cwd
    bugbase user add alice --role ADMIN              # Create a user
    bugbase token issue alice                        # Issue an API token
    bugbase project create TEST "Test project" --owner alice
    bugbase --as alice member add TEST bob --cap manage-bugs
    bugbase --as bob bug create TEST "Crash on save" -p HIGH
    bugbase --as bob bug list TEST --status NEW
    bugbase --as bob bug show TEST-1
    bugbase --as bob comment TEST-1 "cc @alice"
    bugbase --as alice inbox --unread
    bugbase serve --port 9000                        # HTTP + WebSocket server
"""

from __future__ import annotations

import click

from bugbase import __version__
from bugbase.cli_commands import admin, bugs


@click.group()
@click.version_option(version=__version__, prog_name="bugbase")
@click.option("--as", "actor", default=None, envvar="BUGBASE_USER", help="Acting username (or $BUGBASE_USER)")
@click.pass_context
def cli(ctx: click.Context, actor: str | None) -> None:
    """bugbase: collaborative bug tracker."""
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor


admin.register(cli)
bugs.register(cli)


if __name__ == "__main__":
    cli()
