"""CLI commands for bugs, comments and watchers."""

from __future__ import annotations

import asyncio
import json as json_mod
from typing import Any

import click

from bugbase.cli_common import fail, get_actor, get_db, split_bug_key
from bugbase.core import BugbaseDB
from bugbase.errors import BugbaseError
from bugbase.models import RESOLVED_STATUSES, VALID_PRIORITIES, VALID_SEVERITIES, VALID_STATUSES, Bug
from bugbase.service import TrackerService


def _resolve_bug(db: BugbaseDB, key: str) -> Bug:
    project_key, number = split_bug_key(key)
    project = db.get_project_by_key(project_key)
    return db.get_bug_by_number(project.id, number)


def _assignee_id(db: BugbaseDB, username: str | None) -> str | None:
    if username is None:
        return None
    if username in ("", "none"):
        return ""
    return db.get_subject_by_username(username).id


@click.group()
def bug() -> None:
    """Create, inspect and update bugs (acting user given with --as)."""


@bug.command("create")
@click.argument("project_key")
@click.argument("title")
@click.option("--description", "-d", default="", help="Description")
@click.option("--priority", "-p", type=click.Choice(sorted(VALID_PRIORITIES)), default="MEDIUM", show_default=True)
@click.option("--severity", type=click.Choice(sorted(VALID_SEVERITIES)), default="MAJOR", show_default=True)
@click.option("--assignee", default=None, help="Assignee username")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def bug_create(
    ctx: click.Context,
    project_key: str,
    title: str,
    description: str,
    priority: str,
    severity: str,
    assignee: str | None,
    as_json: bool,
) -> None:
    """Report a new bug in PROJECT_KEY."""
    with get_db() as db:
        actor = get_actor(ctx, db, as_json=as_json)
        service = TrackerService(db)
        try:
            project = db.get_project_by_key(project_key.upper())
            fields: dict[str, Any] = {
                "title": title,
                "description": description,
                "priority": priority,
                "severity": severity,
            }
            if assignee:
                fields["assignee_id"] = _assignee_id(db, assignee) or None
            outcome = asyncio.run(service.create_bug(actor, project.id, fields))
        except BugbaseError as e:
            fail(e.message, as_json=as_json)
        if as_json:
            click.echo(json_mod.dumps(outcome.bug.to_dict(), indent=2, default=str))
        else:
            click.echo(f"Created {outcome.bug.display_key}: {outcome.bug.title}")


@bug.command("list")
@click.argument("project_key")
@click.option("--status", type=click.Choice(sorted(VALID_STATUSES)), default=None)
@click.option("--priority", type=click.Choice(sorted(VALID_PRIORITIES)), default=None)
@click.option("--search", default=None, help="Match title or description")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, 100))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def bug_list(
    ctx: click.Context,
    project_key: str,
    status: str | None,
    priority: str | None,
    search: str | None,
    limit: int,
    as_json: bool,
) -> None:
    """List bugs in PROJECT_KEY, newest first."""
    with get_db() as db:
        actor = get_actor(ctx, db, as_json=as_json)
        service = TrackerService(db)
        try:
            project = db.get_project_by_key(project_key.upper())
            result = service.list_bugs(actor, project.id, status=status, priority=priority, search=search, limit=limit)
        except BugbaseError as e:
            fail(e.message, as_json=as_json)
        if as_json:
            click.echo(json_mod.dumps(result, indent=2, default=str))
            return
        if not result["results"]:
            click.echo("No bugs found.")
            return
        for b in result["results"]:
            click.echo(f"{b['key']:<10} {b['status']:<18} {b['priority']:<9} {b['title']}")
        if result["has_more"]:
            click.echo(f"... {result['total'] - len(result['results'])} more")


@bug.command("show")
@click.argument("key")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def bug_show(ctx: click.Context, key: str, as_json: bool) -> None:
    """Show bug KEY (e.g. TEST-6) with its comments."""
    with get_db() as db:
        actor = get_actor(ctx, db, as_json=as_json)
        service = TrackerService(db)
        try:
            found = service.get_bug(actor, _resolve_bug(db, key).id)
            comments = service.list_comments(actor, found.id)
            watchers = [w.subject_id for w in service.list_watchers(actor, found.id)]
        except BugbaseError as e:
            fail(e.message, as_json=as_json)
        if as_json:
            data = found.to_dict()
            data["comments"] = [c.to_dict() for c in comments]
            data["watchers"] = watchers
            click.echo(json_mod.dumps(data, indent=2, default=str))
            return
        click.echo(f"{found.display_key}: {found.title}")
        click.echo(f"  Status:   {found.status}")
        click.echo(f"  Priority: {found.priority}  Severity: {found.severity}")
        click.echo(f"  Assignee: {found.assignee_id or 'unassigned'}")
        if found.description:
            click.echo(f"\n{found.description}")
        for c in comments:
            click.echo(f"\n[{c.created_at}] {c.author_id}: {c.content}")


@bug.command("update")
@click.argument("key")
@click.option("--status", type=click.Choice(sorted(VALID_STATUSES)), default=None)
@click.option("--priority", type=click.Choice(sorted(VALID_PRIORITIES)), default=None)
@click.option("--severity", type=click.Choice(sorted(VALID_SEVERITIES)), default=None)
@click.option("--title", default=None)
@click.option("--assignee", default=None, help="Assignee username ('none' to unassign)")
@click.pass_context
def bug_update(
    ctx: click.Context,
    key: str,
    status: str | None,
    priority: str | None,
    severity: str | None,
    title: str | None,
    assignee: str | None,
) -> None:
    """Update fields of bug KEY."""
    with get_db() as db:
        actor = get_actor(ctx, db)
        service = TrackerService(db)
        try:
            target = _resolve_bug(db, key)
            changes: dict[str, Any] = {
                k: v for k, v in (("status", status), ("priority", priority), ("severity", severity), ("title", title)) if v
            }
            if assignee is not None:
                changes["assignee_id"] = _assignee_id(db, assignee) or None
            if not changes:
                fail("Nothing to update")
            outcome = asyncio.run(service.update_bug(actor, target.id, changes))
        except BugbaseError as e:
            fail(e.message)
        if outcome.activity is None:
            click.echo(f"{target.display_key}: no changes")
        else:
            click.echo(f"{target.display_key}: {outcome.activity.description}")


@bug.command("close")
@click.argument("key")
@click.option("--status", type=click.Choice(sorted(RESOLVED_STATUSES)), default="CLOSED")
@click.pass_context
def bug_close(ctx: click.Context, key: str, status: str) -> None:
    """Move bug KEY into a resolved status."""
    ctx.invoke(bug_update, key=key, status=status)


@bug.command("delete")
@click.argument("key")
@click.pass_context
def bug_delete(ctx: click.Context, key: str) -> None:
    """Delete bug KEY."""
    with get_db() as db:
        actor = get_actor(ctx, db)
        service = TrackerService(db)
        try:
            target = _resolve_bug(db, key)
            asyncio.run(service.delete_bug(actor, target.id))
        except BugbaseError as e:
            fail(e.message)
        click.echo(f"Deleted {target.display_key}")


# ---------------------------------------------------------------------------
# Comments & watchers
# ---------------------------------------------------------------------------


@click.command()
@click.argument("key")
@click.argument("text")
@click.option("--reply-to", default=None, help="Parent comment id")
@click.pass_context
def comment(ctx: click.Context, key: str, text: str, reply_to: str | None) -> None:
    """Comment on bug KEY. @username mentions notify project members."""
    with get_db() as db:
        actor = get_actor(ctx, db)
        service = TrackerService(db)
        try:
            target = _resolve_bug(db, key)
            outcome = asyncio.run(service.add_comment(actor, target.id, text, parent_id=reply_to))
        except BugbaseError as e:
            fail(e.message)
        if outcome.comment is None:
            fail(f"Comment on {target.display_key} was not recorded")
        click.echo(f"Added comment {outcome.comment.id} to {target.display_key}")


@click.command()
@click.argument("key")
@click.option("--stop", is_flag=True, help="Stop watching instead")
@click.pass_context
def watch(ctx: click.Context, key: str, stop: bool) -> None:
    """Watch (or stop watching) bug KEY."""
    with get_db() as db:
        actor = get_actor(ctx, db)
        service = TrackerService(db)
        try:
            target = _resolve_bug(db, key)
            if stop:
                asyncio.run(service.remove_watcher(actor, target.id))
            else:
                asyncio.run(service.add_watcher(actor, target.id))
        except BugbaseError as e:
            fail(e.message)
        click.echo(f"{'Stopped watching' if stop else 'Watching'} {target.display_key}")


@click.command()
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--mark-read", is_flag=True, help="Mark everything read after listing")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def inbox(ctx: click.Context, unread: bool, mark_read: bool, as_json: bool) -> None:
    """Show the acting user's notifications."""
    with get_db() as db:
        actor = get_actor(ctx, db, as_json=as_json)
        service = TrackerService(db)
        notifications = service.list_notifications(actor, unread_only=unread)
        if mark_read:
            service.mark_all_notifications_read(actor)
        if as_json:
            click.echo(json_mod.dumps([n.to_dict() for n in notifications], indent=2, default=str))
            return
        if not notifications:
            click.echo("No notifications.")
            return
        for n in notifications:
            marker = " " if n.is_read else "*"
            click.echo(f"{marker} [{n.type}] {n.message}")


def register(cli: click.Group) -> None:
    """Register bug commands with the CLI group."""
    cli.add_command(bug)
    cli.add_command(comment)
    cli.add_command(watch)
    cli.add_command(inbox)
