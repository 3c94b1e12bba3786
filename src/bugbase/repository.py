"""The storage capability consumed by the mutation core.

``BugbaseDB`` is the production implementation. The pipeline, fan-out and
HTTP layers are typed against this Protocol so a test double or a different
engine can be passed in their place.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from contextlib import AbstractContextManager
from typing import Any, Protocol

from bugbase.clock import Clock
from bugbase.models import (
    ActivityLogEntry,
    Bug,
    Capability,
    Comment,
    Notification,
    NotificationDraft,
    Project,
    ProjectMembership,
    Subject,
    Watcher,
)
from bugbase.types.core import PaginatedResult


class Repository(Protocol):
    clock: Clock

    def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    # Subjects / projects / memberships
    def get_subject(self, subject_id: str) -> Subject: ...
    def get_subjects(self, subject_ids: Iterable[str]) -> list[Subject]: ...
    def find_subjects_by_usernames(self, usernames: Iterable[str]) -> list[Subject]: ...
    def get_project(self, project_id: str) -> Project: ...
    def list_projects_for(self, subject_id: str) -> list[Project]: ...
    def get_membership(self, project_id: str, subject_id: str) -> ProjectMembership | None: ...
    def list_members(self, project_id: str) -> list[ProjectMembership]: ...
    def member_ids(self, project_id: str, subject_ids: Iterable[str]) -> set[str]: ...
    def insert_membership(self, project_id: str, subject_id: str, capabilities: Capability) -> ProjectMembership: ...
    def delete_membership(self, project_id: str, subject_id: str) -> bool: ...

    # Bugs
    def max_bug_number(self, project_id: str) -> int: ...
    def insert_bug(
        self,
        project_id: str,
        number: int,
        reporter_id: str,
        fields: dict[str, Any],
        *,
        resolved_at: str | None = None,
    ) -> Bug: ...
    def get_bug(self, bug_id: str) -> Bug: ...
    def write_bug(self, bug_id: str, changes: dict[str, Any], *, resolved_at: str | None) -> Bug: ...
    def delete_bug_row(self, bug_id: str) -> None: ...
    def list_bugs(self, project_id: str, **filters: Any) -> PaginatedResult: ...

    # Comments / mentions
    def insert_comment(self, bug_id: str, author_id: str, content: str, *, parent_id: str | None = None) -> Comment: ...
    def get_comment(self, comment_id: str) -> Comment: ...
    def write_comment_content(self, comment_id: str, content: str) -> Comment: ...
    def delete_comment_row(self, comment_id: str) -> None: ...
    def list_comments(self, bug_id: str) -> list[Comment]: ...
    def mentioned_subject_ids(self, bug_id: str, comment_id: str | None = None) -> set[str]: ...
    def replace_mentions(self, bug_id: str, comment_id: str | None, subject_ids: Iterable[str]) -> None: ...

    # Watchers
    def insert_watcher(self, bug_id: str, subject_id: str) -> Watcher: ...
    def ensure_watcher(self, bug_id: str, subject_id: str) -> bool: ...
    def delete_watcher(self, bug_id: str, subject_id: str) -> bool: ...
    def is_watching(self, bug_id: str, subject_id: str) -> bool: ...
    def list_watchers(self, bug_id: str) -> list[Watcher]: ...
    def watcher_ids(self, bug_id: str) -> list[str]: ...

    # Activity
    def append_activity(
        self,
        bug_id: str,
        project_id: str,
        actor_id: str,
        action: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLogEntry: ...
    def list_activity(self, bug_id: str, *, limit: int = 50) -> list[ActivityLogEntry]: ...

    # Notifications
    def insert_notifications(self, drafts: Iterable[NotificationDraft]) -> list[Notification]: ...
    def list_notifications(
        self, recipient_id: str, *, unread_only: bool = False, limit: int = 50, offset: int = 0
    ) -> list[Notification]: ...
    def unread_count(self, recipient_id: str) -> int: ...
    def mark_notification_read(self, recipient_id: str, notification_id: int) -> Notification: ...
    def mark_all_notifications_read(self, recipient_id: str) -> int: ...
