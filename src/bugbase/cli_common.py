"""Shared CLI helpers.

Provides ``get_db()``, ``get_actor()`` and ``fail()`` so that ``cli.py``
and the ``cli_commands/*.py`` modules can access them without circular
imports.
"""

from __future__ import annotations

import json as json_mod
import sys
from typing import NoReturn

import click

from bugbase.core import BUGBASE_DIR_NAME, DB_FILENAME, BugbaseDB, find_bugbase_root
from bugbase.errors import NotFound
from bugbase.models import Subject


def get_db() -> BugbaseDB:
    """Discover .bugbase/ and return an initialized BugbaseDB."""
    try:
        bugbase_dir = find_bugbase_root()
    except FileNotFoundError:
        click.echo(f"No {BUGBASE_DIR_NAME}/ found. Run 'bugbase init' first.", err=True)
        sys.exit(1)
    db = BugbaseDB(bugbase_dir / DB_FILENAME)
    db.initialize()
    return db


def fail(message: str, *, as_json: bool = False) -> NoReturn:
    """Report *message* (as JSON when requested) and exit 1."""
    if as_json:
        click.echo(json_mod.dumps({"error": message}))
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def get_actor(ctx: click.Context, db: BugbaseDB, *, as_json: bool = False) -> Subject:
    """Resolve the ``--as`` username given to the top-level group."""
    username = ctx.obj.get("actor")
    if not username:
        fail("this command needs an acting user: pass --as USERNAME", as_json=as_json)
    try:
        return db.get_subject_by_username(username)
    except NotFound:
        fail(f"Unknown user: {username}", as_json=as_json)


def split_bug_key(key: str) -> tuple[str, int]:
    """``TEST-6`` -> ``("TEST", 6)``. Raises ``click.BadParameter`` on malformed keys."""
    project_key, sep, number = key.rpartition("-")
    if not sep or not project_key or not number.isdigit():
        msg = f"expected a bug key like TEST-6, got {key!r}"
        raise click.BadParameter(msg)
    return project_key.upper(), int(number)
