"""Tests for presence tracking: rooms, join/leave announcements and heartbeats."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from bugbase.models import Subject
from bugbase.presence import (
    GLOBAL_ROOM,
    PresenceSession,
    PresenceTracker,
    bug_room,
    parse_room,
    presence_room,
    user_room,
)
from bugbase.types.events import RoomMessage
from tests._db_factory import ManualClock

X = Subject(id="usr-x", username="xavier", full_name="Xavier")
Y = Subject(id="usr-y", username="yolanda")
Z = Subject(id="usr-z", username="zed")

ROOM = presence_room(bug_room("42"))


def drain(session: PresenceSession) -> list[RoomMessage]:
    messages: list[RoomMessage] = []
    while not session.outbox.empty():
        message = session.outbox.get_nowait()
        if message is not None:
            messages.append(message)
    return messages


def events(session: PresenceSession) -> list[tuple[str, Any]]:
    return [(m["event"], m["data"]) for m in drain(session)]


class TestRoomNames:
    def test_parse_known_rooms(self) -> None:
        parsed = parse_room("bug:42:presence")
        assert parsed is not None
        assert (parsed.scope, parsed.entity_id, parsed.presence) == ("bug", "42", True)
        assert parse_room(GLOBAL_ROOM) is not None
        user = parse_room(user_room("usr-x"))
        assert user is not None and user.personal

    def test_parse_unknown(self) -> None:
        assert parse_room("lobby") is None
        assert parse_room("bug:") is None
        assert parse_room("bug:1:extra") is None

    def test_presence_room_idempotent(self) -> None:
        assert presence_room("bug:1") == "bug:1:presence"
        assert presence_room("bug:1:presence") == "bug:1:presence"


class TestJoinLeave:
    def test_joiner_sees_existing_and_others_see_joiner(self, tracker: PresenceTracker) -> None:
        sx, sy = tracker.connect(X), tracker.connect(Y)
        tracker.join_room(sx, ROOM)
        tracker.join_room(sy, ROOM)
        drain(sx)
        drain(sy)

        sz = tracker.connect(Z)
        tracker.join_room(sz, ROOM)

        assert events(sz) == [("presence:users", [X.presence_dict(), Y.presence_dict()])]
        assert events(sx) == [("presence:user_joined", Z.presence_dict())]
        assert events(sy) == [("presence:user_joined", Z.presence_dict())]

    def test_first_joiner_gets_empty_list(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        tracker.join_room(sx, ROOM)
        assert events(sx) == [("presence:users", [])]

    def test_leave_announced(self, tracker: PresenceTracker) -> None:
        sx, sy = tracker.connect(X), tracker.connect(Y)
        tracker.join_room(sx, ROOM)
        tracker.join_room(sy, ROOM)
        drain(sx)
        tracker.leave_room(sy, ROOM)
        assert events(sx) == [("presence:user_left", {"id": Y.id})]
        assert tracker.members(ROOM) == [X]

    def test_second_tab_is_silent(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        tracker.join_room(sx, ROOM)
        drain(sx)
        y1, y2 = tracker.connect(Y), tracker.connect(Y)
        tracker.join_room(y1, ROOM)
        tracker.join_room(y2, ROOM)
        assert events(sx) == [("presence:user_joined", Y.presence_dict())]

        tracker.leave_room(y1, ROOM)
        assert events(sx) == []
        tracker.leave_room(y2, ROOM)
        assert events(sx) == [("presence:user_left", {"id": Y.id})]

    def test_personal_room_joined_silently(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        assert user_room(X.id) in sx.rooms
        assert events(sx) == []

    def test_empty_room_discarded(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        tracker.join_room(sx, ROOM)
        tracker.leave_room(sx, ROOM)
        assert ROOM not in tracker.rooms()
        assert not tracker.has_subscribers(ROOM)

    def test_leave_unjoined_room_is_noop(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        tracker.leave_room(sx, ROOM)
        assert events(sx) == []


class TestDisconnect:
    def test_disconnect_leaves_all_rooms(self, tracker: PresenceTracker) -> None:
        sx, sy = tracker.connect(X), tracker.connect(Y)
        for room in (ROOM, "project:p1"):
            tracker.join_room(sx, room)
            tracker.join_room(sy, room)
        drain(sx)

        tracker.disconnect(sy)
        assert events(sx) == [("presence:user_left", {"id": Y.id})] * 2
        assert sy.closed
        assert sy not in tracker.sessions
        queued = [sy.outbox.get_nowait() for _ in range(sy.outbox.qsize())]
        assert queued[-1] is None

    def test_disconnect_twice_is_safe(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        tracker.disconnect(sx)
        tracker.disconnect(sx)
        assert tracker.sessions == []

    def test_disconnect_with_full_outbox_still_wakes_sender(self, clock: ManualClock) -> None:
        tracker = PresenceTracker(clock=clock, outbox_size=1)
        sx = tracker.connect(X)
        sx.deliver(RoomMessage(event="pong", room="", data={}))
        tracker.disconnect(sx)
        assert sx.outbox.get_nowait() is None

    def test_closed_session_ignores_delivery(self, tracker: PresenceTracker) -> None:
        sx = tracker.connect(X)
        tracker.disconnect(sx)
        assert sx.deliver(RoomMessage(event="pong", room="", data={})) is False


class TestOutbox:
    def test_full_outbox_drops_and_counts(self, clock: ManualClock, caplog: pytest.LogCaptureFixture) -> None:
        tracker = PresenceTracker(clock=clock, outbox_size=2)
        sx = tracker.connect(X)
        results = [sx.deliver(RoomMessage(event="pong", room="", data={})) for _ in range(3)]
        assert results == [True, True, False]
        assert sx.dropped == 1
        assert "Outbox full" in caplog.text


class TestHeartbeat:
    def test_sweep_expires_idle_sessions(self, tracker: PresenceTracker, clock: ManualClock) -> None:
        sx, sy = tracker.connect(X), tracker.connect(Y)
        tracker.join_room(sx, ROOM)
        tracker.join_room(sy, ROOM)
        drain(sx)
        clock.advance(45)
        tracker.touch(sx)
        clock.advance(30)

        expired = tracker.sweep()
        assert expired == [sy]
        assert tracker.sessions == [sx]
        assert events(sx) == [("presence:user_left", {"id": Y.id})]

    def test_sweep_boundary(self, tracker: PresenceTracker, clock: ManualClock) -> None:
        tracker.connect(X)
        clock.advance(60)
        assert tracker.sweep() == []
        clock.advance(1)
        assert len(tracker.sweep()) == 1

    async def test_reaper_runs_until_cancelled(self, tracker: PresenceTracker, clock: ManualClock) -> None:
        tracker.connect(X)
        clock.advance(120)
        reaper = asyncio.create_task(tracker.run_reaper(0.01))
        for _ in range(50):
            if not tracker.sessions:
                break
            await asyncio.sleep(0.01)
        reaper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await reaper
        assert tracker.sessions == []

    def test_close_all(self, tracker: PresenceTracker) -> None:
        sessions = [tracker.connect(X), tracker.connect(Y)]
        tracker.close_all()
        assert tracker.sessions == []
        assert all(s.closed for s in sessions)
