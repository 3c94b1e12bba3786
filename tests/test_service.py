"""End-to-end tests through TrackerService: pipeline -> fan-out -> broadcast."""

from __future__ import annotations

import logging

import pytest

from bugbase.errors import Forbidden, NotFound
from bugbase.presence import PresenceSession, PresenceTracker, bug_room, project_room
from bugbase.service import TrackerService
from bugbase.types.events import RoomMessage
from tests._db_factory import World


def drain(session: PresenceSession) -> list[RoomMessage]:
    messages: list[RoomMessage] = []
    while not session.outbox.empty():
        message = session.outbox.get_nowait()
        if message is not None:
            messages.append(message)
    return messages


class TestDispatch:
    async def test_comment_reaches_room_and_inboxes(
        self, world: World, service: TrackerService, tracker: PresenceTracker
    ) -> None:
        bug = (await service.create_bug(world.pm, world.project.id, {"title": "Crash"})).bug
        pm_session = tracker.connect(world.pm)
        rep_session = tracker.connect(world.rep)
        tracker.join_room(pm_session, bug_room(bug.id))
        drain(pm_session)
        drain(rep_session)

        await service.add_comment(world.dev, bug.id, "ping @rep")

        pm_events = [m["event"] for m in drain(pm_session)]
        assert pm_events == ["comment:created", "notification:new"]
        rep_messages = drain(rep_session)
        assert [m["event"] for m in rep_messages] == ["notification:new"]
        assert rep_messages[0]["data"]["type"] == "MENTION"
        assert service.unread_count(world.rep) == 1
        assert service.unread_count(world.pm) == 1

    async def test_created_bug_announced_in_project(
        self, world: World, service: TrackerService, tracker: PresenceTracker
    ) -> None:
        session = tracker.connect(world.qa)
        tracker.join_room(session, project_room(world.project.id))
        drain(session)
        outcome = await service.create_bug(world.dev, world.project.id, {"title": "New one"})
        (message,) = drain(session)
        assert message["event"] == "bug:created"
        assert message["data"]["bug"]["key"] == outcome.bug.display_key

    async def test_no_op_dispatches_nothing(self, world: World, service: TrackerService, tracker: PresenceTracker) -> None:
        bug = (await service.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        session = tracker.connect(world.qa)
        tracker.join_room(session, bug_room(bug.id))
        drain(session)
        await service.update_bug(world.dev, bug.id, {"title": "x"})
        assert drain(session) == []

    async def test_denied_mutation_has_no_side_effects(self, world: World, service: TrackerService) -> None:
        bug = (await service.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(Forbidden):
            await service.update_bug(world.outsider, bug.id, {"priority": "LOW"})
        assert service.list_activity(world.dev, bug.id)[-1].action == "CREATED"
        assert service.list_notifications(world.dev) == []

    async def test_fanout_failure_still_broadcasts(
        self,
        world: World,
        service: TrackerService,
        tracker: PresenceTracker,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        bug = (await service.create_bug(world.pm, world.project.id, {"title": "x"})).bug
        session = tracker.connect(world.qa)
        tracker.join_room(session, bug_room(bug.id))
        drain(session)

        def _explode(*args: object, **kwargs: object) -> None:
            raise RuntimeError("fanout broke")

        monkeypatch.setattr(service.fanout, "fanout", _explode)
        with caplog.at_level(logging.WARNING, logger="bugbase.service"):
            outcome = await service.add_comment(world.dev, bug.id, "still here")
        assert outcome.comment is not None
        assert [m["event"] for m in drain(session)] == ["comment:created"]
        assert "Fan-out failed" in caplog.text

    async def test_dispatch_logs_structured_fields(
        self, world: World, service: TrackerService, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="bugbase.service"):
            outcome = await service.create_bug(world.dev, world.project.id, {"title": "x"})
        (record,) = [r for r in caplog.records if r.name == "bugbase.service"]
        assert record.event == "bug:created"  # type: ignore[attr-defined]
        assert record.event_id == outcome.event_id  # type: ignore[attr-defined]
        assert record.actor == world.dev.id  # type: ignore[attr-defined]
        assert record.project_id == world.project.id  # type: ignore[attr-defined]
        assert record.recipients == 0  # type: ignore[attr-defined]
        assert record.delivered == 0  # type: ignore[attr-defined]
        assert record.duration_ms >= 0  # type: ignore[attr-defined]
        assert outcome.event_id in record.getMessage()


class TestNotificationsInbox:
    async def test_mark_read(self, world: World, service: TrackerService) -> None:
        bug = (await service.create_bug(world.pm, world.project.id, {"title": "x"})).bug
        await service.add_comment(world.dev, bug.id, "one")
        await service.add_comment(world.qa, bug.id, "two")
        inbox = service.list_notifications(world.pm)
        assert len(inbox) == 2
        service.mark_notification_read(world.pm, inbox[0].id)
        assert service.unread_count(world.pm) == 1
        assert len(service.list_notifications(world.pm, unread_only=True)) == 1
        assert service.mark_all_notifications_read(world.pm) == 1
        assert service.unread_count(world.pm) == 0

    async def test_cannot_read_others_notifications(self, world: World, service: TrackerService) -> None:
        bug = (await service.create_bug(world.pm, world.project.id, {"title": "x"})).bug
        await service.add_comment(world.dev, bug.id, "one")
        (notification,) = service.list_notifications(world.pm)
        with pytest.raises(NotFound):
            service.mark_notification_read(world.dev, notification.id)


class TestReads:
    async def test_list_projects_scoped_to_membership(self, world: World, service: TrackerService) -> None:
        assert [p.key for p in service.list_projects(world.dev)] == ["TEST"]
        assert service.list_projects(world.outsider) == []

    async def test_outsider_cannot_read_bug(self, world: World, service: TrackerService) -> None:
        bug = (await service.create_bug(world.dev, world.project.id, {"title": "x"})).bug
        with pytest.raises(Forbidden):
            service.get_bug(world.outsider, bug.id)
        with pytest.raises(Forbidden):
            service.list_comments(world.outsider, bug.id)
