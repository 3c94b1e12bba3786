"""Live-connection presence: sessions, rooms and join/leave announcements.

State is process-local and rebuilt from nothing on restart. Every session
owns a bounded outbox queue; the tracker and the broadcaster only ever
``put_nowait`` into it, and the connection's sender task drains it. A full
outbox drops the message for that one session.

Presence is counted per subject: a subject with two tabs open in a room is
announced once on its first join and once on its last leave.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from bugbase.clock import Clock, SystemClock
from bugbase.models import Subject
from bugbase.types.events import RoomMessage

logger = logging.getLogger(__name__)

GLOBAL_ROOM = "global"
PRESENCE_SUFFIX = ":presence"

_ROOM_RE = re.compile(r"^(?:global|(?P<scope>bug|project|user):(?P<id>[\w-]+))(?P<presence>:presence)?$")


def bug_room(bug_id: str) -> str:
    return f"bug:{bug_id}"


def project_room(project_id: str) -> str:
    return f"project:{project_id}"


def user_room(subject_id: str) -> str:
    return f"user:{subject_id}"


def presence_room(room: str) -> str:
    return room if room.endswith(PRESENCE_SUFFIX) else room + PRESENCE_SUFFIX


@dataclass(frozen=True)
class RoomName:
    name: str
    scope: str
    entity_id: str | None
    presence: bool

    @property
    def personal(self) -> bool:
        return self.scope == "user"


def parse_room(name: str) -> RoomName | None:
    """Parse a room name; None if it is not a recognised room."""
    match = _ROOM_RE.match(name)
    if match is None:
        return None
    scope = match.group("scope") or GLOBAL_ROOM
    return RoomName(name=name, scope=scope, entity_id=match.group("id"), presence=bool(match.group("presence")))


def _is_personal(room: str) -> bool:
    return room.startswith("user:")


@dataclass(eq=False)
class PresenceSession:
    """One live connection. Not persisted."""

    id: str
    subject: Subject
    outbox: asyncio.Queue[RoomMessage | None]
    last_seen: datetime
    rooms: set[str] = field(default_factory=set)
    closed: bool = False
    dropped: int = 0

    def deliver(self, message: RoomMessage) -> bool:
        """Enqueue *message*; False (and logged) when the outbox is full or closed."""
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Outbox full for session %s (%s); dropped %s",
                self.id,
                self.subject.id,
                message["event"],
                extra={
                    "event": message["event"],
                    "room": message["room"],
                    "session": self.id,
                    "subject": self.subject.id,
                    "dropped": self.dropped,
                },
            )
            return False
        return True


class PresenceTracker:
    def __init__(
        self,
        *,
        clock: Clock | None = None,
        heartbeat_timeout: float = 60.0,
        outbox_size: int = 256,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.heartbeat_timeout = heartbeat_timeout
        self.outbox_size = outbox_size
        self._sessions: dict[str, PresenceSession] = {}
        # room -> session id -> session, in join order
        self._rooms: dict[str, dict[str, PresenceSession]] = {}

    # -- queries -------------------------------------------------------------

    @property
    def sessions(self) -> list[PresenceSession]:
        return list(self._sessions.values())

    def sessions_in(self, room: str) -> list[PresenceSession]:
        return list(self._rooms.get(room, {}).values())

    def has_subscribers(self, room: str) -> bool:
        return bool(self._rooms.get(room))

    def members(self, room: str, *, exclude_subject: str | None = None) -> list[Subject]:
        """Distinct subjects present in *room*, in order of first join."""
        seen: dict[str, Subject] = {}
        for session in self._rooms.get(room, {}).values():
            subject = session.subject
            if subject.id != exclude_subject and subject.id not in seen:
                seen[subject.id] = subject
        return list(seen.values())

    def rooms(self) -> list[str]:
        return list(self._rooms)

    def _subject_in_room(self, room: str, subject_id: str, *, besides: PresenceSession) -> bool:
        return any(s.subject.id == subject_id and s is not besides for s in self._rooms.get(room, {}).values())

    # -- lifecycle -----------------------------------------------------------

    def connect(self, subject: Subject) -> PresenceSession:
        session = PresenceSession(
            id=f"ses-{uuid.uuid4().hex[:12]}",
            subject=subject,
            outbox=asyncio.Queue(maxsize=self.outbox_size),
            last_seen=self.clock.now(),
        )
        self._sessions[session.id] = session
        self.join_room(session, user_room(subject.id))
        logger.info("Session %s connected for %s", session.id, subject.username)
        return session

    def touch(self, session: PresenceSession) -> None:
        session.last_seen = self.clock.now()

    def join_room(self, session: PresenceSession, room: str) -> None:
        if session.closed:
            return
        members = self._rooms.setdefault(room, {})
        already_joined = session.id in members
        subject = session.subject
        announce = not already_joined and not self._subject_in_room(room, subject.id, besides=session)
        others = self.members(room, exclude_subject=subject.id)

        members[session.id] = session
        session.rooms.add(room)
        if _is_personal(room):
            return

        session.deliver(RoomMessage(event="presence:users", room=room, data=[s.presence_dict() for s in others]))
        if announce:
            joined = RoomMessage(event="presence:user_joined", room=room, data=subject.presence_dict())
            for other in self.sessions_in(room):
                if other is not session:
                    other.deliver(joined)

    def leave_room(self, session: PresenceSession, room: str) -> None:
        members = self._rooms.get(room)
        if members is None or session.id not in members:
            return
        del members[session.id]
        session.rooms.discard(room)
        if not members:
            del self._rooms[room]
            return
        if _is_personal(room) or self._subject_in_room(room, session.subject.id, besides=session):
            return
        left = RoomMessage(event="presence:user_left", room=room, data={"id": session.subject.id})
        for other in members.values():
            other.deliver(left)

    def disconnect(self, session: PresenceSession) -> None:
        if session.closed or session.id not in self._sessions:
            return
        for room in list(session.rooms):
            self.leave_room(session, room)
        del self._sessions[session.id]
        session.closed = True
        # Wake the sender task so it can exit; a full outbox is discarded first.
        while True:
            try:
                session.outbox.put_nowait(None)
                break
            except asyncio.QueueFull:
                session.outbox.get_nowait()
        logger.info("Session %s disconnected for %s", session.id, session.subject.username)

    # -- heartbeat -----------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> list[PresenceSession]:
        """Disconnect sessions idle for longer than the heartbeat timeout."""
        now = now or self.clock.now()
        limit = timedelta(seconds=self.heartbeat_timeout)
        expired = [s for s in self._sessions.values() if now - s.last_seen > limit]
        for session in expired:
            logger.info("Session %s timed out (last seen %s)", session.id, session.last_seen.isoformat())
            self.disconnect(session)
        return expired

    async def run_reaper(self, interval: float) -> None:
        """Sweep forever every *interval* seconds. Cancel to stop."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.error("Presence sweep failed", exc_info=True)

    def close_all(self) -> None:
        for session in list(self._sessions.values()):
            self.disconnect(session)
