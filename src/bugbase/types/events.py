"""TypedDicts for realtime wire messages.

Server -> client frames are ``RoomMessage``; the ``data`` payload shape
depends on ``event``.
"""

from __future__ import annotations

from typing import Any, Literal, TypeAlias, TypedDict

EventType: TypeAlias = Literal[
    "bug:created",
    "bug:updated",
    "bug:deleted",
    "comment:created",
    "comment:updated",
    "comment:deleted",
    "notification:new",
    "presence:users",
    "presence:user_joined",
    "presence:user_left",
    "pong",
    "error",
]


class RoomMessage(TypedDict):
    event: str
    room: str
    data: Any


class PresenceUser(TypedDict):
    id: str
    username: str
    full_name: str


class BugEventPayload(TypedDict):
    bug: dict[str, Any]
    activity: dict[str, Any] | None


class CommentEventPayload(TypedDict):
    bug_id: str
    comment: dict[str, Any]
