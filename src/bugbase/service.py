"""TrackerService: the caller that drives a mutation through to live clients.

pipeline (atomic, errors surface) -> fan-out (best-effort) -> broadcast
(best-effort). Failures after the pipeline has committed are logged and
swallowed; the caller still receives the committed outcome.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

from bugbase.broadcast import RealtimeBroadcaster
from bugbase.fanout import NotificationFanout
from bugbase.logging import context_logger
from bugbase.models import (
    ActivityLogEntry,
    Bug,
    Capability,
    Comment,
    Notification,
    Project,
    ProjectMembership,
    Subject,
    Watcher,
)
from bugbase.pipeline import MutationOutcome, MutationPipeline
from bugbase.presence import PresenceTracker
from bugbase.repository import Repository
from bugbase.types.core import PaginatedResult


class TrackerService:
    def __init__(
        self,
        repo: Repository,
        *,
        tracker: PresenceTracker | None = None,
        pipeline: MutationPipeline | None = None,
        fanout: NotificationFanout | None = None,
        broadcaster: RealtimeBroadcaster | None = None,
    ) -> None:
        self.repo = repo
        self.tracker = tracker or PresenceTracker(clock=repo.clock)
        self.pipeline = pipeline or MutationPipeline(repo)
        self.fanout = fanout or NotificationFanout(repo)
        self.broadcaster = broadcaster or RealtimeBroadcaster(self.tracker)

    async def _dispatch(self, outcome: MutationOutcome) -> list[Notification]:
        if not outcome.changed:
            return []
        log = context_logger(
            __name__,
            event_id=outcome.event_id,
            event=outcome.kind,
            actor=outcome.actor.id,
            bug_id=outcome.bug.id,
            project_id=outcome.bug.project_id,
        )
        started = time.perf_counter()
        notifications: list[Notification] = []
        delivered = 0
        try:
            notifications = self.fanout.fanout(outcome)
        except Exception:
            log.warning("Fan-out failed for %s", outcome.event_id, exc_info=True)
        try:
            delivered = self.broadcaster.publish(outcome)
            for notification in notifications:
                delivered += self.broadcaster.notify(notification)
        except Exception:
            log.warning("Broadcast failed for %s", outcome.event_id, exc_info=True)
        log.info(
            "Dispatched %s %s",
            outcome.kind,
            outcome.event_id,
            extra={
                "recipients": len(notifications),
                "delivered": delivered,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return notifications

    # -- mutations -----------------------------------------------------------

    async def create_bug(self, actor: Subject, project_id: str, fields: dict[str, Any]) -> MutationOutcome:
        outcome = await self.pipeline.create_bug(actor, project_id, fields)
        await self._dispatch(outcome)
        return outcome

    async def update_bug(self, actor: Subject, bug_id: str, changes: dict[str, Any]) -> MutationOutcome:
        outcome = await self.pipeline.update_bug(actor, bug_id, changes)
        await self._dispatch(outcome)
        return outcome

    async def delete_bug(self, actor: Subject, bug_id: str) -> MutationOutcome:
        outcome = await self.pipeline.delete_bug(actor, bug_id)
        await self._dispatch(outcome)
        return outcome

    async def add_comment(self, actor: Subject, bug_id: str, content: str, *, parent_id: str | None = None) -> MutationOutcome:
        outcome = await self.pipeline.add_comment(actor, bug_id, content, parent_id=parent_id)
        await self._dispatch(outcome)
        return outcome

    async def update_comment(self, actor: Subject, comment_id: str, content: str) -> MutationOutcome:
        outcome = await self.pipeline.update_comment(actor, comment_id, content)
        await self._dispatch(outcome)
        return outcome

    async def delete_comment(self, actor: Subject, comment_id: str) -> MutationOutcome:
        outcome = await self.pipeline.delete_comment(actor, comment_id)
        await self._dispatch(outcome)
        return outcome

    async def add_watcher(self, actor: Subject, bug_id: str, subject_id: str | None = None) -> Watcher:
        return await self.pipeline.add_watcher(actor, bug_id, subject_id)

    async def remove_watcher(self, actor: Subject, bug_id: str, subject_id: str | None = None) -> None:
        await self.pipeline.remove_watcher(actor, bug_id, subject_id)

    async def add_member(
        self,
        actor: Subject,
        project_id: str,
        subject_id: str,
        capabilities: Capability | Iterable[str] = Capability.COMMENT,
    ) -> ProjectMembership:
        return await self.pipeline.add_member(actor, project_id, subject_id, capabilities)

    async def remove_member(self, actor: Subject, project_id: str, subject_id: str) -> None:
        await self.pipeline.remove_member(actor, project_id, subject_id)

    # -- reads ---------------------------------------------------------------

    def get_project(self, actor: Subject, project_id: str) -> Project:
        return self.pipeline.get_project(actor, project_id)

    def list_projects(self, actor: Subject) -> list[Project]:
        return self.repo.list_projects_for(actor.id)

    def get_bug(self, actor: Subject, bug_id: str) -> Bug:
        return self.pipeline.get_bug(actor, bug_id)

    def list_bugs(self, actor: Subject, project_id: str, **filters: Any) -> PaginatedResult:
        return self.pipeline.list_bugs(actor, project_id, **filters)

    def list_comments(self, actor: Subject, bug_id: str) -> list[Comment]:
        return self.pipeline.list_comments(actor, bug_id)

    def list_activity(self, actor: Subject, bug_id: str, *, limit: int = 50) -> list[ActivityLogEntry]:
        return self.pipeline.list_activity(actor, bug_id, limit=limit)

    def list_watchers(self, actor: Subject, bug_id: str) -> list[Watcher]:
        return self.pipeline.list_watchers(actor, bug_id)

    def list_members(self, actor: Subject, project_id: str) -> list[ProjectMembership]:
        return self.pipeline.list_members(actor, project_id)

    # -- notifications (always scoped to the actor) --------------------------

    def list_notifications(
        self, actor: Subject, *, unread_only: bool = False, limit: int = 50, offset: int = 0
    ) -> list[Notification]:
        return self.repo.list_notifications(actor.id, unread_only=unread_only, limit=limit, offset=offset)

    def unread_count(self, actor: Subject) -> int:
        return self.repo.unread_count(actor.id)

    def mark_notification_read(self, actor: Subject, notification_id: int) -> Notification:
        return self.repo.mark_notification_read(actor.id, notification_id)

    def mark_all_notifications_read(self, actor: Subject) -> int:
        return self.repo.mark_all_notifications_read(actor.id)
