"""Activity log derivation.

``diff_snapshots`` and ``describe_changes`` are pure; ``ActivityRecorder``
appends the result through the repository. Entries are never rewritten.
"""

from __future__ import annotations

from typing import Any

from bugbase.models import MUTABLE_FIELDS, TRACKED_FIELDS, ActivityLogEntry, Bug, Subject
from bugbase.repository import Repository
from bugbase.types.core import FieldChange

_FIELD_LABELS = {
    "status": "Status",
    "priority": "Priority",
    "severity": "Severity",
    "assignee_id": "Assignee",
    "title": "Title",
}


def diff_snapshots(before: dict[str, Any], after: dict[str, Any]) -> dict[str, FieldChange]:
    """Field -> {old, new} for every mutable field whose value differs."""
    changes: dict[str, FieldChange] = {}
    for name in MUTABLE_FIELDS:
        old, new = before.get(name), after.get(name)
        if old != new:
            changes[name] = FieldChange(old=old, new=new)
    return changes


def _render(name: str, value: Any) -> str:
    if value is None:
        return "unassigned" if name == "assignee_id" else "none"
    if name == "title":
        return f"'{value}'"
    return str(value)


def describe_changes(changes: dict[str, FieldChange]) -> str:
    """One sentence per tracked field, joined; a generic line if only untracked fields moved."""
    sentences = [
        f"{_FIELD_LABELS[name]} changed from {_render(name, changes[name]['old'])} to {_render(name, changes[name]['new'])}"
        for name in TRACKED_FIELDS
        if name in changes
    ]
    if sentences:
        return ", ".join(sentences)
    if changes:
        return f"Bug updated ({', '.join(sorted(changes))})"
    return ""


class ActivityRecorder:
    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def record(self, bug: Bug, actor: Subject, before: dict[str, Any], after: dict[str, Any]) -> ActivityLogEntry | None:
        """Append an UPDATED entry for the before/after delta.

        Returns None, and writes nothing, when nothing changed.
        """
        changes = diff_snapshots(before, after)
        if not changes:
            return None
        return self._repo.append_activity(
            bug.id,
            bug.project_id,
            actor.id,
            "UPDATED",
            describe_changes(changes),
            {"changes": changes},
        )

    def record_created(self, bug: Bug, actor: Subject) -> ActivityLogEntry:
        return self._repo.append_activity(
            bug.id, bug.project_id, actor.id, "CREATED", f"Bug {bug.display_key} created", {"number": bug.number}
        )

    def record_deleted(self, bug: Bug, actor: Subject) -> ActivityLogEntry:
        return self._repo.append_activity(
            bug.id,
            bug.project_id,
            actor.id,
            "DELETED",
            f"Bug {bug.display_key} deleted",
            {"snapshot": bug.to_dict()},
        )

    def record_comment(self, bug: Bug, actor: Subject, comment_id: str, action: str = "COMMENTED") -> ActivityLogEntry:
        descriptions = {
            "COMMENTED": f"Comment added to {bug.display_key}",
            "COMMENT_EDITED": f"Comment edited on {bug.display_key}",
            "COMMENT_DELETED": f"Comment deleted from {bug.display_key}",
        }
        return self._repo.append_activity(
            bug.id, bug.project_id, actor.id, action, descriptions[action], {"comment_id": comment_id}
        )
