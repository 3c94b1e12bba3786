"""CLI commands for setup and administration: init, user, token, project, member, serve."""

from __future__ import annotations

import asyncio
import json as json_mod
from pathlib import Path

import click

from bugbase.auth import TokenAuthenticator
from bugbase.cli_common import fail, get_actor, get_db
from bugbase.core import BUGBASE_DIR_NAME, DB_FILENAME, DEFAULT_CONFIG, BugbaseDB, read_config, write_config
from bugbase.errors import BugbaseError, NotFound
from bugbase.models import ALL_CAPABILITIES, VALID_ROLES, Capability
from bugbase.service import TrackerService


@click.command()
@click.option("--name", default=None, help="Deployment name (default: directory name)")
def init(name: str | None) -> None:
    """Initialize .bugbase/ in the current directory."""
    cwd = Path.cwd()
    bugbase_dir = cwd / BUGBASE_DIR_NAME

    if bugbase_dir.exists():
        click.echo(f"{BUGBASE_DIR_NAME}/ already exists in {cwd}")
        # Still ensure DB is initialized
        with BugbaseDB(bugbase_dir / DB_FILENAME) as db:
            db.initialize()
        return

    bugbase_dir.mkdir()
    config = dict(DEFAULT_CONFIG)
    config["name"] = name or cwd.name
    write_config(bugbase_dir, config)

    with BugbaseDB(bugbase_dir / DB_FILENAME) as db:
        db.initialize()

    click.echo(f"Initialized {BUGBASE_DIR_NAME}/ in {cwd}")
    click.echo(f"  Database: {bugbase_dir / DB_FILENAME}")
    click.echo("\nNext: bugbase user add <username> --role ADMIN")


# ---------------------------------------------------------------------------
# Users & tokens
# ---------------------------------------------------------------------------


@click.group()
def user() -> None:
    """Manage users."""


@user.command("add")
@click.argument("username")
@click.option("--role", type=click.Choice(sorted(VALID_ROLES)), default="REPORTER", show_default=True)
@click.option("--full-name", default="", help="Display name")
@click.option("--email", default="", help="Email address")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def user_add(username: str, role: str, full_name: str, email: str, as_json: bool) -> None:
    """Create a user."""
    with get_db() as db:
        try:
            subject = db.create_subject(username, role=role, full_name=full_name, email=email)
        except BugbaseError as e:
            fail(e.message, as_json=as_json)
        if as_json:
            click.echo(json_mod.dumps(subject.to_dict(), indent=2))
        else:
            click.echo(f"Created user {subject.username} ({subject.id}, {subject.role})")


@click.group()
def token() -> None:
    """Manage API tokens."""


@token.command("issue")
@click.argument("username")
def token_issue(username: str) -> None:
    """Issue a bearer token for USERNAME. It is shown once."""
    with get_db() as db:
        try:
            subject = db.get_subject_by_username(username)
        except NotFound:
            fail(f"Unknown user: {username}")
        click.echo(TokenAuthenticator(db).issue(subject.id))


# ---------------------------------------------------------------------------
# Projects & membership
# ---------------------------------------------------------------------------


@click.group()
def project() -> None:
    """Manage projects."""


@project.command("create")
@click.argument("key")
@click.argument("name")
@click.option("--description", "-d", default="", help="Description")
@click.option("--owner", default=None, help="Username added as a member with every capability")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def project_create(key: str, name: str, description: str, owner: str | None, as_json: bool) -> None:
    """Create a project identified by KEY (e.g. TEST)."""
    with get_db() as db:
        try:
            owner_subject = db.get_subject_by_username(owner) if owner else None
            with db.transaction():
                created = db.create_project(key.upper(), name, description=description)
                if owner_subject is not None:
                    db.insert_membership(created.id, owner_subject.id, ALL_CAPABILITIES)
        except BugbaseError as e:
            fail(e.message, as_json=as_json)
        if as_json:
            click.echo(json_mod.dumps(created.to_dict(), indent=2))
        else:
            click.echo(f"Created project {created.key}: {created.name} ({created.id})")


@click.group()
def member() -> None:
    """Manage project membership (acting user given with --as)."""


@member.command("add")
@click.argument("project_key")
@click.argument("username")
@click.option(
    "--cap",
    "caps",
    multiple=True,
    help="Capability: manage-project, manage-bugs, comment, test (repeatable; default: comment)",
)
@click.pass_context
def member_add(ctx: click.Context, project_key: str, username: str, caps: tuple[str, ...]) -> None:
    """Add USERNAME to the project."""
    with get_db() as db:
        actor = get_actor(ctx, db)
        service = TrackerService(db)
        try:
            target = db.get_subject_by_username(username)
            proj = db.get_project_by_key(project_key.upper())
            capabilities = Capability.parse(caps) if caps else Capability.COMMENT
            membership = asyncio.run(service.add_member(actor, proj.id, target.id, capabilities))
        except BugbaseError as e:
            fail(e.message)
        click.echo(f"Added {username} to {proj.key} ({', '.join(membership.capabilities.names()) or 'no capabilities'})")


@member.command("remove")
@click.argument("project_key")
@click.argument("username")
@click.pass_context
def member_remove(ctx: click.Context, project_key: str, username: str) -> None:
    """Remove USERNAME from the project."""
    with get_db() as db:
        actor = get_actor(ctx, db)
        service = TrackerService(db)
        try:
            target = db.get_subject_by_username(username)
            proj = db.get_project_by_key(project_key.upper())
            asyncio.run(service.remove_member(actor, proj.id, target.id))
        except BugbaseError as e:
            fail(e.message)
        click.echo(f"Removed {username} from {proj.key}")


@member.command("list")
@click.argument("project_key")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def member_list(project_key: str, as_json: bool) -> None:
    """List members of the project."""
    with get_db() as db:
        try:
            proj = db.get_project_by_key(project_key.upper())
        except NotFound as e:
            fail(e.message, as_json=as_json)
        members = db.list_members(proj.id)
        subjects = {s.id: s for s in db.get_subjects(m.subject_id for m in members)}
        if as_json:
            click.echo(json_mod.dumps([m.to_dict() for m in members], indent=2))
            return
        for m in members:
            name = subjects[m.subject_id].username if m.subject_id in subjects else m.subject_id
            click.echo(f"{name:<20} {', '.join(m.capabilities.names())}")


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@click.command()
@click.option("--port", default=None, type=int, help="Port (default: from config, 8377)")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
def serve(port: int | None, host: str) -> None:
    """Run the HTTP + WebSocket server."""
    from bugbase.core import find_bugbase_root
    from bugbase.dashboard import main as dashboard_main

    try:
        bugbase_dir = find_bugbase_root()
    except FileNotFoundError:
        fail(f"No {BUGBASE_DIR_NAME}/ found. Run 'bugbase init' first.")
    if port is None:
        port = read_config(bugbase_dir).get("port")
    dashboard_main(port, host=host, bugbase_dir=bugbase_dir)


def register(cli: click.Group) -> None:
    """Register admin commands with the CLI group."""
    cli.add_command(init)
    cli.add_command(user)
    cli.add_command(token)
    cli.add_command(project)
    cli.add_command(member)
    cli.add_command(serve)
