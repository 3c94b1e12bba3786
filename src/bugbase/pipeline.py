"""MutationPipeline: every state change to bugs, comments, watchers and memberships.

Each operation follows the same shape:

1. load current state (``NotFound`` if absent),
2. ask the authorization gate (``Forbidden`` on denial),
3. validate the command (``ValidationFailed`` / ``InvalidAssignee`` /
   ``Conflict``) before anything is written,
4. persist inside one ``repo.transaction()``: the entity write, implicit
   watchers, mention rows and the activity entry commit or roll back
   together.

The returned ``MutationOutcome`` is what notification fan-out and the
realtime broadcaster consume. The pipeline itself never notifies.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from bugbase.activity import ActivityRecorder, diff_snapshots
from bugbase.authz import Action, Target, require
from bugbase.clock import to_iso
from bugbase.errors import Conflict, Forbidden, InvalidAssignee, NotFound, ValidationFailed
from bugbase.mentions import extract_mentions, resolve_mentions
from bugbase.models import (
    MUTABLE_FIELDS,
    VALID_PRIORITIES,
    VALID_SEVERITIES,
    VALID_STATUSES,
    ActivityLogEntry,
    Bug,
    Capability,
    Comment,
    Project,
    ProjectMembership,
    Subject,
    Watcher,
    is_resolved,
)
from bugbase.repository import Repository
from bugbase.sequence import SequenceAllocator
from bugbase.types.core import FieldChange, PaginatedResult
from bugbase.validation import (
    validate_choice,
    validate_custom_fields,
    validate_due_date,
    validate_hours,
    validate_text,
    validate_title,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MutationOutcome:
    """Result of one committed (or no-op) mutation.

    ``bug`` is the post-mutation state, or the last state before deletion.
    ``watcher_ids`` is only populated for deletes, where the watcher rows
    are gone by the time fan-out runs.
    """

    event_id: str
    kind: str
    actor: Subject
    bug: Bug
    activity: ActivityLogEntry | None = None
    comment: Comment | None = None
    new_mention_ids: frozenset[str] = frozenset()
    assignee_changed: bool = False
    changes: dict[str, FieldChange] = field(default_factory=dict)
    watcher_ids: tuple[str, ...] | None = None
    changed: bool = True


def _new_event_id() -> str:
    return f"evt-{uuid.uuid4().hex}"


def _clean_fields(raw: Mapping[str, Any], *, creating: bool) -> dict[str, Any]:
    """Validate a bug field map. Unknown or immutable keys are rejected."""
    unknown = set(raw) - set(MUTABLE_FIELDS)
    if unknown:
        msg = f"Unknown or immutable bug fields: {', '.join(sorted(unknown))}"
        raise ValidationFailed(msg)
    if creating and "status" in raw and raw["status"] != "NEW":
        raise ValidationFailed("New bugs always start in status NEW")
    if creating and "title" not in raw:
        raise ValidationFailed("Title cannot be empty")

    clean: dict[str, Any] = {}
    for name, value in raw.items():
        if name == "title":
            clean[name] = validate_title(value)
        elif name == "status":
            clean[name] = validate_choice(value, VALID_STATUSES, "status")
        elif name == "priority":
            clean[name] = validate_choice(value, VALID_PRIORITIES, "priority")
        elif name == "severity":
            clean[name] = validate_choice(value, VALID_SEVERITIES, "severity")
        elif name == "assignee_id":
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise ValidationFailed("assignee_id must be a subject id or null")
            clean[name] = value
        elif name in ("estimated_hours", "actual_hours"):
            clean[name] = validate_hours(value, name)
        elif name == "due_date":
            clean[name] = validate_due_date(value)
        elif name == "custom_fields":
            clean[name] = validate_custom_fields(value)
        else:
            clean[name] = validate_text(value if value is not None else "", name)
    return clean


class MutationPipeline:
    def __init__(
        self,
        repo: Repository,
        *,
        allocator: SequenceAllocator | None = None,
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self.repo = repo
        self.allocator = allocator or SequenceAllocator(repo)
        self.recorder = recorder or ActivityRecorder(repo)

    # -- helpers -------------------------------------------------------------

    def _now_iso(self) -> str:
        return to_iso(self.repo.clock.now())

    def _membership(self, project_id: str, subject: Subject) -> ProjectMembership | None:
        return self.repo.get_membership(project_id, subject.id)

    def _require(self, actor: Subject, action: Action, project_id: str, **target: Any) -> None:
        require(actor, action, Target(project_id=project_id, membership=self._membership(project_id, actor), **target))

    def _check_assignee(self, project_id: str, assignee_id: str | None) -> None:
        if assignee_id is None:
            return
        if assignee_id not in self.repo.member_ids(project_id, [assignee_id]):
            msg = f"Assignee {assignee_id} is not a member of project {project_id}"
            raise InvalidAssignee(msg)

    def _resolve_mention_ids(self, text: str | None) -> set[str]:
        return {s.id for s in resolve_mentions(self.repo, extract_mentions(text))}

    # -- bugs ----------------------------------------------------------------

    async def create_bug(self, actor: Subject, project_id: str, fields: Mapping[str, Any]) -> MutationOutcome:
        project = self.repo.get_project(project_id)
        raw_assignee = fields.get("assignee_id")
        if not isinstance(raw_assignee, str) or not raw_assignee.strip():
            raw_assignee = None
        assignee_is_member = raw_assignee is None or bool(self.repo.member_ids(project.id, [raw_assignee]))
        try:
            self._require(actor, "create-bug", project.id, assignee_id=raw_assignee, assignee_is_member=assignee_is_member)
        except Forbidden as exc:
            if exc.reason == "ASSIGNEE_NOT_MEMBER":
                raise InvalidAssignee(exc.message) from exc
            raise
        clean = _clean_fields(fields, creating=True)
        clean.setdefault("custom_fields", {})
        assignee_id = clean.get("assignee_id")
        self._check_assignee(project.id, assignee_id)
        mention_ids = self._resolve_mention_ids(clean.get("description"))

        def _insert(number: int) -> tuple[Bug, ActivityLogEntry]:
            with self.repo.transaction():
                bug = self.repo.insert_bug(project.id, number, actor.id, clean)
                self.repo.ensure_watcher(bug.id, actor.id)
                if assignee_id is not None:
                    self.repo.ensure_watcher(bug.id, assignee_id)
                if mention_ids:
                    self.repo.replace_mentions(bug.id, None, mention_ids)
                entry = self.recorder.record_created(bug, actor)
            return bug, entry

        bug, entry = await self.allocator.claim(project.id, _insert)
        logger.info("Created bug %s (%s) by %s", bug.display_key, bug.id, actor.id)
        return MutationOutcome(
            event_id=_new_event_id(),
            kind="bug:created",
            actor=actor,
            bug=bug,
            activity=entry,
            new_mention_ids=frozenset(mention_ids),
            assignee_changed=assignee_id is not None,
        )

    async def update_bug(self, actor: Subject, bug_id: str, changes: Mapping[str, Any]) -> MutationOutcome:
        bug = self.repo.get_bug(bug_id)
        self._require(actor, "update-bug", bug.project_id, reporter_id=bug.reporter_id, assignee_id=bug.assignee_id)
        clean = _clean_fields(changes, creating=False)

        before = bug.snapshot()
        after = {**before, **clean}
        delta = diff_snapshots(before, after)
        if not delta:
            return MutationOutcome(event_id=_new_event_id(), kind="bug:updated", actor=actor, bug=bug, changed=False)

        assignee_changed = "assignee_id" in delta
        if assignee_changed:
            self._check_assignee(bug.project_id, after["assignee_id"])

        resolved_at = bug.resolved_at
        if is_resolved(after["status"]) and not is_resolved(before["status"]):
            resolved_at = self._now_iso()
        elif not is_resolved(after["status"]):
            resolved_at = None

        new_mention_ids: set[str] = set()
        mention_ids: set[str] | None = None
        if "description" in delta:
            mention_ids = self._resolve_mention_ids(after["description"])
            new_mention_ids = mention_ids - self.repo.mentioned_subject_ids(bug.id, None)

        with self.repo.transaction():
            updated = self.repo.write_bug(bug.id, {name: after[name] for name in delta}, resolved_at=resolved_at)
            if assignee_changed and after["assignee_id"] is not None:
                self.repo.ensure_watcher(bug.id, after["assignee_id"])
            if mention_ids is not None:
                self.repo.replace_mentions(bug.id, None, mention_ids)
            entry = self.recorder.record(updated, actor, before, after)

        logger.info("Updated bug %s by %s: %s", updated.display_key, actor.id, ", ".join(sorted(delta)))
        return MutationOutcome(
            event_id=_new_event_id(),
            kind="bug:updated",
            actor=actor,
            bug=updated,
            activity=entry,
            new_mention_ids=frozenset(new_mention_ids),
            assignee_changed=assignee_changed,
            changes=delta,
        )

    async def delete_bug(self, actor: Subject, bug_id: str) -> MutationOutcome:
        bug = self.repo.get_bug(bug_id)
        self._require(actor, "delete-bug", bug.project_id, reporter_id=bug.reporter_id, assignee_id=bug.assignee_id)
        watcher_ids = tuple(self.repo.watcher_ids(bug.id))
        with self.repo.transaction():
            entry = self.recorder.record_deleted(bug, actor)
            self.repo.delete_bug_row(bug.id)
        logger.info("Deleted bug %s (%s) by %s", bug.display_key, bug.id, actor.id)
        return MutationOutcome(
            event_id=_new_event_id(),
            kind="bug:deleted",
            actor=actor,
            bug=bug,
            activity=entry,
            watcher_ids=watcher_ids,
        )

    # -- comments ------------------------------------------------------------

    async def add_comment(
        self,
        actor: Subject,
        bug_id: str,
        content: str,
        *,
        parent_id: str | None = None,
    ) -> MutationOutcome:
        bug = self.repo.get_bug(bug_id)
        self._require(actor, "comment", bug.project_id)
        content = validate_text(content, "content", required=True)
        if parent_id is not None:
            parent = self.repo.get_comment(parent_id)
            if parent.bug_id != bug.id:
                raise ValidationFailed("Parent comment does not belong to this bug")
        mention_ids = self._resolve_mention_ids(content)

        with self.repo.transaction():
            comment = self.repo.insert_comment(bug.id, actor.id, content, parent_id=parent_id)
            if mention_ids:
                self.repo.replace_mentions(bug.id, comment.id, mention_ids)
            self.repo.ensure_watcher(bug.id, actor.id)
            entry = self.recorder.record_comment(bug, actor, comment.id)
        comment = self.repo.get_comment(comment.id)

        return MutationOutcome(
            event_id=_new_event_id(),
            kind="comment:created",
            actor=actor,
            bug=bug,
            activity=entry,
            comment=comment,
            new_mention_ids=frozenset(mention_ids),
        )

    async def update_comment(self, actor: Subject, comment_id: str, content: str) -> MutationOutcome:
        comment = self.repo.get_comment(comment_id)
        bug = self.repo.get_bug(comment.bug_id)
        self._require(actor, "edit-comment", bug.project_id, author_id=comment.author_id)
        content = validate_text(content, "content", required=True)
        if content == comment.content:
            return MutationOutcome(
                event_id=_new_event_id(),
                kind="comment:updated",
                actor=actor,
                bug=bug,
                comment=comment,
                changed=False,
            )

        mention_ids = self._resolve_mention_ids(content)
        new_mention_ids = mention_ids - self.repo.mentioned_subject_ids(bug.id, comment.id)
        with self.repo.transaction():
            self.repo.write_comment_content(comment.id, content)
            self.repo.replace_mentions(bug.id, comment.id, mention_ids)
            entry = self.recorder.record_comment(bug, actor, comment.id, "COMMENT_EDITED")
        updated = self.repo.get_comment(comment.id)

        return MutationOutcome(
            event_id=_new_event_id(),
            kind="comment:updated",
            actor=actor,
            bug=bug,
            activity=entry,
            comment=updated,
            new_mention_ids=frozenset(new_mention_ids),
        )

    async def delete_comment(self, actor: Subject, comment_id: str) -> MutationOutcome:
        comment = self.repo.get_comment(comment_id)
        bug = self.repo.get_bug(comment.bug_id)
        self._require(actor, "delete-comment", bug.project_id, author_id=comment.author_id)
        with self.repo.transaction():
            entry = self.recorder.record_comment(bug, actor, comment.id, "COMMENT_DELETED")
            self.repo.delete_comment_row(comment.id)
        return MutationOutcome(
            event_id=_new_event_id(),
            kind="comment:deleted",
            actor=actor,
            bug=bug,
            activity=entry,
            comment=comment,
        )

    # -- watchers ------------------------------------------------------------

    async def add_watcher(self, actor: Subject, bug_id: str, subject_id: str | None = None) -> Watcher:
        bug = self.repo.get_bug(bug_id)
        watched_id = subject_id or actor.id
        self._require(actor, "watch", bug.project_id, on_behalf_of=watched_id)
        self.repo.get_subject(watched_id)
        if self.repo.is_watching(bug.id, watched_id):
            msg = f"Subject {watched_id} is already watching {bug.display_key}"
            raise Conflict(msg)
        return self.repo.insert_watcher(bug.id, watched_id)

    async def remove_watcher(self, actor: Subject, bug_id: str, subject_id: str | None = None) -> None:
        bug = self.repo.get_bug(bug_id)
        watched_id = subject_id or actor.id
        self._require(actor, "watch", bug.project_id, on_behalf_of=watched_id)
        if not self.repo.delete_watcher(bug.id, watched_id):
            msg = f"Subject {watched_id} is not watching {bug.display_key}"
            raise NotFound(msg)

    # -- memberships ---------------------------------------------------------

    async def add_member(
        self,
        actor: Subject,
        project_id: str,
        subject_id: str,
        capabilities: Capability | Iterable[str] = Capability.COMMENT,
    ) -> ProjectMembership:
        project = self.repo.get_project(project_id)
        self._require(actor, "manage-members", project.id)
        self.repo.get_subject(subject_id)
        caps = capabilities if isinstance(capabilities, Capability) else Capability.parse(capabilities)
        membership = self.repo.insert_membership(project.id, subject_id, caps)
        logger.info("Added %s to project %s with %s", subject_id, project.key, caps.names())
        return membership

    async def remove_member(self, actor: Subject, project_id: str, subject_id: str) -> None:
        project = self.repo.get_project(project_id)
        self._require(actor, "manage-members", project.id)
        if not self.repo.delete_membership(project.id, subject_id):
            msg = f"Subject {subject_id} is not a member of project {project.key}"
            raise NotFound(msg)
        logger.info("Removed %s from project %s", subject_id, project.key)

    # -- reads ---------------------------------------------------------------

    def get_project(self, actor: Subject, project_id: str) -> Project:
        project = self.repo.get_project(project_id)
        self._require(actor, "view", project.id)
        return project

    def get_bug(self, actor: Subject, bug_id: str) -> Bug:
        bug = self.repo.get_bug(bug_id)
        self._require(actor, "view", bug.project_id)
        return bug

    def list_bugs(self, actor: Subject, project_id: str, **filters: Any) -> PaginatedResult:
        project = self.repo.get_project(project_id)
        self._require(actor, "view", project.id)
        return self.repo.list_bugs(project.id, **filters)

    def list_comments(self, actor: Subject, bug_id: str) -> list[Comment]:
        bug = self.get_bug(actor, bug_id)
        return self.repo.list_comments(bug.id)

    def list_activity(self, actor: Subject, bug_id: str, *, limit: int = 50) -> list[ActivityLogEntry]:
        bug = self.get_bug(actor, bug_id)
        return self.repo.list_activity(bug.id, limit=limit)

    def list_watchers(self, actor: Subject, bug_id: str) -> list[Watcher]:
        bug = self.get_bug(actor, bug_id)
        return self.repo.list_watchers(bug.id)

    def list_members(self, actor: Subject, project_id: str) -> list[ProjectMembership]:
        project = self.repo.get_project(project_id)
        self._require(actor, "view", project.id)
        return self.repo.list_members(project.id)
