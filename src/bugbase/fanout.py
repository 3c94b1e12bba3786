"""Notification fan-out: one mutation outcome -> one notification per interested subject.

Recipients are gathered by rule, in order: watchers of the bug, the
assignee when this event changed it, then subjects newly mentioned in the
event's content who hold a membership on the project. The actor is never
a recipient. A subject picked by several rules still yields exactly one
notification; its type is the most specific rule that matched
(ASSIGNED, then MENTION, then the watcher type for the event).

Persistence is best-effort: the mutation of record is already committed,
so a failed batch is logged and dropped, never retried.
"""

from __future__ import annotations

import logging
from typing import Any

from bugbase.models import Notification, NotificationDraft
from bugbase.pipeline import MutationOutcome
from bugbase.repository import Repository

logger = logging.getLogger(__name__)

# Watcher-rule notification type per event kind. Kinds missing here notify
# watchers of nothing (edits and deletions of comments only notify new mentions).
_WATCHER_TYPES: dict[str, str] = {
    "bug:created": "BUG_CREATED",
    "bug:updated": "BUG_UPDATED",
    "bug:deleted": "BUG_DELETED",
    "comment:created": "COMMENT",
}

_TYPE_RANK = {"ASSIGNED": 0, "MENTION": 1}

_EXCERPT_LENGTH = 140


def _excerpt(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= _EXCERPT_LENGTH else text[: _EXCERPT_LENGTH - 3] + "..."


def _watcher_type(outcome: MutationOutcome) -> str | None:
    kind = _WATCHER_TYPES.get(outcome.kind)
    if kind == "BUG_UPDATED" and "status" in outcome.changes:
        return "STATUS_CHANGE"
    return kind


class NotificationFanout:
    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def recipients(self, outcome: MutationOutcome) -> dict[str, str]:
        """Ordered recipient id -> notification type for *outcome*."""
        if not outcome.changed:
            return {}
        bug = outcome.bug
        selected: dict[str, str] = {}

        def _select(subject_id: str | None, kind: str) -> None:
            if subject_id is None or subject_id == outcome.actor.id:
                return
            current = selected.get(subject_id)
            if current is None or _TYPE_RANK.get(kind, 9) < _TYPE_RANK.get(current, 9):
                selected[subject_id] = kind

        watcher_type = _watcher_type(outcome)
        if watcher_type is not None:
            watchers = outcome.watcher_ids if outcome.watcher_ids is not None else self._repo.watcher_ids(bug.id)
            for subject_id in watchers:
                _select(subject_id, watcher_type)

        if outcome.assignee_changed and outcome.kind != "bug:deleted":
            _select(bug.assignee_id, "ASSIGNED")

        if outcome.new_mention_ids:
            for subject_id in sorted(self._repo.member_ids(bug.project_id, outcome.new_mention_ids)):
                _select(subject_id, "MENTION")

        return selected

    def drafts(self, outcome: MutationOutcome) -> list[NotificationDraft]:
        return [self._draft(outcome, recipient_id, kind) for recipient_id, kind in self.recipients(outcome).items()]

    def _draft(self, outcome: MutationOutcome, recipient_id: str, kind: str) -> NotificationDraft:
        bug, actor = outcome.bug, outcome.actor
        key = bug.display_key
        data: dict[str, Any] = {
            "event": outcome.kind,
            "bug_id": bug.id,
            "project_id": bug.project_id,
            "key": key,
            "actor_id": actor.id,
        }
        if outcome.comment is not None:
            data["comment_id"] = outcome.comment.id
        description = outcome.activity.description if outcome.activity is not None else ""

        if kind == "ASSIGNED":
            title, message = f"{key} assigned to you", f"{actor.username} assigned you: {bug.title}"
        elif kind == "MENTION":
            source = outcome.comment.content if outcome.comment is not None else bug.description
            title, message = f"{actor.username} mentioned you in {key}", _excerpt(source)
        elif kind == "COMMENT":
            title, message = f"New comment on {key}", _excerpt(outcome.comment.content if outcome.comment else "")
        elif kind == "BUG_CREATED":
            title, message = f"New bug {key}", f"{actor.username} reported: {bug.title}"
        elif kind == "BUG_DELETED":
            title, message = f"{key} deleted", f"{actor.username} deleted: {bug.title}"
        elif kind == "STATUS_CHANGE":
            title, message = f"{key} status changed", description
        else:
            title, message = f"{key} updated", description
        return NotificationDraft(
            recipient_id=recipient_id,
            event_id=outcome.event_id,
            type=kind,
            title=title,
            message=message,
            data=data,
        )

    def fanout(self, outcome: MutationOutcome) -> list[Notification]:
        """Compute and persist notifications. Returns the rows actually written."""
        drafts = self.drafts(outcome)
        if not drafts:
            return []
        try:
            notifications = self._repo.insert_notifications(drafts)
        except Exception:
            logger.warning(
                "Failed to persist %d notification(s) for %s",
                len(drafts),
                outcome.event_id,
                exc_info=True,
                extra={"event": outcome.kind, "recipients": len(drafts)},
            )
            return []
        logger.debug(
            "Fan-out for %s produced %d notification(s)",
            outcome.event_id,
            len(notifications),
            extra={"event": outcome.kind, "recipients": len(notifications)},
        )
        return notifications
