"""Tests for the mutation pipeline: authorization, validation and atomic side effects."""

from __future__ import annotations

import pytest

from bugbase.errors import Conflict, Forbidden, InvalidAssignee, NotFound, ValidationFailed
from bugbase.models import Capability
from bugbase.pipeline import MutationPipeline
from tests._db_factory import ManualClock, World


@pytest.fixture
def pipeline(world: World) -> MutationPipeline:
    return MutationPipeline(world.db)


class TestCreateBug:
    async def test_create_defaults(self, world: World, pipeline: MutationPipeline) -> None:
        outcome = await pipeline.create_bug(world.dev, world.project.id, {"title": "Crash on save"})
        bug = outcome.bug
        assert outcome.kind == "bug:created"
        assert outcome.event_id.startswith("evt-")
        assert (bug.number, bug.status, bug.reporter_id) == (1, "NEW", world.dev.id)
        assert bug.resolved_at is None
        assert outcome.activity is not None and outcome.activity.action == "CREATED"

    async def test_reporter_becomes_watcher(self, world: World, pipeline: MutationPipeline) -> None:
        outcome = await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "assignee_id": world.qa.id})
        assert set(world.db.watcher_ids(outcome.bug.id)) == {world.dev.id, world.qa.id}
        assert outcome.assignee_changed is True

    async def test_reporter_role_lacks_manage_bugs(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(Forbidden) as exc_info:
            await pipeline.create_bug(world.rep, world.project.id, {"title": "x"})
        assert exc_info.value.reason == "MISSING_CAPABILITY"

    async def test_non_member_denied(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(Forbidden) as exc_info:
            await pipeline.create_bug(world.outsider, world.project.id, {"title": "x"})
        assert exc_info.value.reason == "NOT_A_MEMBER"

    async def test_non_member_denied_before_body_checked(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(Forbidden) as exc_info:
            await pipeline.create_bug(world.outsider, world.project.id, {"title": "   ", "priority": "NOPE"})
        assert exc_info.value.reason == "NOT_A_MEMBER"

    async def test_assignee_must_be_member(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(InvalidAssignee):
            await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "assignee_id": world.outsider.id})
        assert world.db.max_bug_number(world.project.id) == 0

    async def test_status_must_start_new(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(ValidationFailed):
            await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "status": "CLOSED"})

    async def test_title_required(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(ValidationFailed):
            await pipeline.create_bug(world.dev, world.project.id, {"description": "no title"})
        with pytest.raises(ValidationFailed):
            await pipeline.create_bug(world.dev, world.project.id, {"title": "   "})

    async def test_immutable_fields_rejected(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(ValidationFailed, match="reporter_id"):
            await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "reporter_id": world.qa.id})

    async def test_unknown_project(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(NotFound):
            await pipeline.create_bug(world.dev, "prj-missing", {"title": "x"})

    async def test_description_mentions_recorded(self, world: World, pipeline: MutationPipeline) -> None:
        outcome = await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "description": "cc @qa @ghost"})
        assert outcome.new_mention_ids == {world.qa.id}
        assert world.db.mentioned_subject_ids(outcome.bug.id) == {world.qa.id}

    async def test_extended_fields(self, world: World, pipeline: MutationPipeline) -> None:
        outcome = await pipeline.create_bug(
            world.dev,
            world.project.id,
            {
                "title": "x",
                "due_date": "2026-03-01",
                "estimated_hours": 3,
                "custom_fields": {"component": "ui"},
            },
        )
        assert outcome.bug.due_date == "2026-03-01"
        assert outcome.bug.estimated_hours == 3.0
        assert outcome.bug.custom_fields == {"component": "ui"}

    async def test_bad_due_date(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(ValidationFailed):
            await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "due_date": "next week"})


class TestUpdateBug:
    async def test_resolved_at_set_and_cleared(self, world: World, pipeline: MutationPipeline, clock: ManualClock) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        clock.advance(60)
        resolved = (await pipeline.update_bug(world.dev, bug.id, {"status": "RESOLVED"})).bug
        assert resolved.resolved_at == clock.now().isoformat()

        clock.advance(60)
        closed = (await pipeline.update_bug(world.dev, bug.id, {"status": "CLOSED"})).bug
        assert closed.resolved_at == resolved.resolved_at

        reopened = (await pipeline.update_bug(world.dev, bug.id, {"status": "REOPENED"})).bug
        assert reopened.resolved_at is None

    async def test_no_op_update(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "priority": "HIGH"})).bug
        outcome = await pipeline.update_bug(world.dev, bug.id, {"priority": "HIGH", "title": "x"})
        assert outcome.changed is False
        assert outcome.activity is None
        assert world.db.count_activity(bug.id) == 1

    async def test_changes_and_activity(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        outcome = await pipeline.update_bug(world.qa, bug.id, {"status": "IN_PROGRESS", "priority": "CRITICAL"})
        assert set(outcome.changes) == {"status", "priority"}
        assert outcome.activity is not None
        assert outcome.activity.description == "Status changed from NEW to IN_PROGRESS, Priority changed from MEDIUM to CRITICAL"

    async def test_reassign_adds_watcher(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        outcome = await pipeline.update_bug(world.dev, bug.id, {"assignee_id": world.qa.id})
        assert outcome.assignee_changed is True
        assert world.db.is_watching(bug.id, world.qa.id)

    async def test_reassign_to_non_member(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(InvalidAssignee):
            await pipeline.update_bug(world.dev, bug.id, {"assignee_id": world.outsider.id})
        assert world.db.get_bug(bug.id).assignee_id is None
        assert world.db.count_activity(bug.id) == 1

    async def test_reporter_cannot_update(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(Forbidden):
            await pipeline.update_bug(world.rep, bug.id, {"status": "IN_PROGRESS"})

    async def test_number_is_immutable(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(ValidationFailed):
            await pipeline.update_bug(world.dev, bug.id, {"number": 9})

    async def test_only_new_description_mentions(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "description": "@qa"})).bug
        outcome = await pipeline.update_bug(world.dev, bug.id, {"description": "@qa and @pm"})
        assert outcome.new_mention_ids == {world.pm.id}

    async def test_last_writer_wins_with_full_history(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        await pipeline.update_bug(world.dev, bug.id, {"priority": "HIGH"})
        await pipeline.update_bug(world.qa, bug.id, {"priority": "LOW"})
        assert world.db.get_bug(bug.id).priority == "LOW"
        assert [e.action for e in world.db.list_activity(bug.id)] == ["CREATED", "UPDATED", "UPDATED"]

    async def test_failed_write_rolls_back_activity(
        self, world: World, pipeline: MutationPipeline, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "description": "d"})).bug

        def _explode(*args: object, **kwargs: object) -> None:
            raise RuntimeError("disk full")

        monkeypatch.setattr(world.db, "replace_mentions", _explode)
        with pytest.raises(RuntimeError):
            await pipeline.update_bug(world.dev, bug.id, {"description": "@qa", "priority": "HIGH"})
        assert world.db.get_bug(bug.id).priority == "MEDIUM"
        assert world.db.count_activity(bug.id) == 1


class TestDeleteBug:
    async def test_reporter_cannot_delete_others_bug(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.admin, world.project.id, {"title": "x"})).bug
        with pytest.raises(Forbidden) as exc_info:
            await pipeline.delete_bug(world.rep, bug.id)
        assert exc_info.value.reason == "INSUFFICIENT_ROLE"

    async def test_delete_snapshots_watchers(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x", "assignee_id": world.qa.id})).bug
        outcome = await pipeline.delete_bug(world.pm, bug.id)
        assert set(outcome.watcher_ids or ()) == {world.dev.id, world.qa.id}
        with pytest.raises(NotFound):
            world.db.get_bug(bug.id)
        assert [e.action for e in world.db.list_activity(bug.id)] == ["CREATED", "DELETED"]

    async def test_deleting_keeps_numbers_monotonic(self, world: World, pipeline: MutationPipeline) -> None:
        first = (await pipeline.create_bug(world.dev, world.project.id, {"title": "a"})).bug
        second = (await pipeline.create_bug(world.dev, world.project.id, {"title": "b"})).bug
        await pipeline.delete_bug(world.dev, first.id)
        third = (await pipeline.create_bug(world.dev, world.project.id, {"title": "c"})).bug
        assert (second.number, third.number) == (2, 3)

    async def test_deleting_newest_does_not_free_its_number(self, world: World, pipeline: MutationPipeline) -> None:
        await pipeline.create_bug(world.dev, world.project.id, {"title": "a"})
        newest = (await pipeline.create_bug(world.dev, world.project.id, {"title": "b"})).bug
        await pipeline.delete_bug(world.dev, newest.id)
        replacement = (await pipeline.create_bug(world.dev, world.project.id, {"title": "c"})).bug
        assert replacement.display_key == "TEST-3"


class TestComments:
    async def test_add_comment(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        outcome = await pipeline.add_comment(world.rep, bug.id, "seeing this too, @qa")
        assert outcome.kind == "comment:created"
        assert outcome.comment is not None
        assert outcome.comment.mentions == ["qa"]
        assert outcome.new_mention_ids == {world.qa.id}
        assert world.db.is_watching(bug.id, world.rep.id)

    async def test_empty_comment_rejected(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(ValidationFailed):
            await pipeline.add_comment(world.dev, bug.id, "   ")

    async def test_reply_must_share_bug(self, world: World, pipeline: MutationPipeline) -> None:
        a = (await pipeline.create_bug(world.dev, world.project.id, {"title": "a"})).bug
        b = (await pipeline.create_bug(world.dev, world.project.id, {"title": "b"})).bug
        parent = (await pipeline.add_comment(world.dev, a.id, "root")).comment
        assert parent is not None
        reply = await pipeline.add_comment(world.dev, a.id, "reply", parent_id=parent.id)
        assert reply.comment is not None and reply.comment.parent_id == parent.id
        with pytest.raises(ValidationFailed):
            await pipeline.add_comment(world.dev, b.id, "stray", parent_id=parent.id)

    async def test_edit_by_author_only(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        comment = (await pipeline.add_comment(world.rep, bug.id, "first")).comment
        assert comment is not None
        with pytest.raises(Forbidden) as exc_info:
            await pipeline.update_comment(world.admin, comment.id, "hijacked")
        assert exc_info.value.reason == "NOT_AUTHOR"
        edited = await pipeline.update_comment(world.rep, comment.id, "second")
        assert edited.comment is not None
        assert edited.comment.is_edited is True
        assert edited.comment.content == "second"

    async def test_edit_reports_only_new_mentions(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        comment = (await pipeline.add_comment(world.rep, bug.id, "@qa")).comment
        assert comment is not None
        edited = await pipeline.update_comment(world.rep, comment.id, "@qa @pm")
        assert edited.new_mention_ids == {world.pm.id}

    async def test_unchanged_edit_is_no_op(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        comment = (await pipeline.add_comment(world.rep, bug.id, "same")).comment
        assert comment is not None
        outcome = await pipeline.update_comment(world.rep, comment.id, "same")
        assert outcome.changed is False
        assert world.db.count_activity(bug.id) == 2

    async def test_delete_comment(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        comment = (await pipeline.add_comment(world.rep, bug.id, "oops")).comment
        assert comment is not None
        with pytest.raises(Forbidden):
            await pipeline.delete_comment(world.dev, comment.id)
        await pipeline.delete_comment(world.pm, comment.id)
        assert world.db.list_comments(bug.id) == []
        assert world.db.list_activity(bug.id)[-1].action == "COMMENT_DELETED"


class TestWatchers:
    async def test_duplicate_watch_conflicts(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        await pipeline.add_watcher(world.rep, bug.id)
        with pytest.raises(Conflict):
            await pipeline.add_watcher(world.rep, bug.id)
        assert world.db.watcher_ids(bug.id).count(world.rep.id) == 1

    async def test_unwatch_not_watching(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(NotFound):
            await pipeline.remove_watcher(world.rep, bug.id)

    async def test_watch_on_behalf(self, world: World, pipeline: MutationPipeline) -> None:
        bug = (await pipeline.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(Forbidden):
            await pipeline.add_watcher(world.rep, bug.id, world.qa.id)
        watcher = await pipeline.add_watcher(world.dev, bug.id, world.qa.id)
        assert watcher.subject_id == world.qa.id


class TestMembers:
    async def test_manager_adds_member(self, world: World, pipeline: MutationPipeline) -> None:
        membership = await pipeline.add_member(world.pm, world.project.id, world.outsider.id, ["comment", "test"])
        assert membership.capabilities == Capability.COMMENT | Capability.TEST

    async def test_developer_cannot_add_member(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(Forbidden):
            await pipeline.add_member(world.dev, world.project.id, world.outsider.id)

    async def test_unknown_capability(self, world: World, pipeline: MutationPipeline) -> None:
        with pytest.raises(ValidationFailed):
            await pipeline.add_member(world.pm, world.project.id, world.outsider.id, ["fly"])

    async def test_remove_revokes_access(self, world: World, pipeline: MutationPipeline) -> None:
        await pipeline.remove_member(world.pm, world.project.id, world.dev.id)
        with pytest.raises(Forbidden):
            pipeline.get_project(world.dev, world.project.id)
        with pytest.raises(NotFound):
            await pipeline.remove_member(world.pm, world.project.id, world.dev.id)
