"""Room-scoped event delivery to live sessions.

Delivery is synchronous enqueue into each session's outbox, so messages
leave in exactly the order ``broadcast`` is called. Sessions that join a
room after a call returns never see that call's message.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from bugbase.models import Notification
from bugbase.pipeline import MutationOutcome
from bugbase.presence import PresenceTracker, bug_room, project_room, user_room
from bugbase.types.events import BugEventPayload, CommentEventPayload, RoomMessage

logger = logging.getLogger(__name__)


def rooms_for(outcome: MutationOutcome) -> list[str]:
    """Rooms an outcome is announced in, most specific first."""
    bug = outcome.bug
    if outcome.kind == "bug:created":
        return [project_room(bug.project_id)]
    if outcome.kind.startswith("bug:"):
        return [bug_room(bug.id), project_room(bug.project_id)]
    return [bug_room(bug.id)]


def payload_for(outcome: MutationOutcome) -> dict[str, Any]:
    activity = outcome.activity.to_dict() if outcome.activity is not None else None
    if outcome.kind.startswith("comment:") and outcome.comment is not None:
        payload: dict[str, Any] = dict(CommentEventPayload(bug_id=outcome.bug.id, comment=outcome.comment.to_dict()))
    else:
        payload = dict(BugEventPayload(bug=outcome.bug.to_dict(), activity=activity))
    return payload


class RealtimeBroadcaster:
    def __init__(self, tracker: PresenceTracker) -> None:
        self.tracker = tracker

    def broadcast(self, room: str, event: str, payload: Any) -> int:
        """Deliver to every session in *room*. Returns how many accepted it."""
        return self.broadcast_rooms([room], event, payload)

    def broadcast_rooms(self, rooms: Iterable[str], event: str, payload: Any) -> int:
        """Deliver one event across several rooms, at most once per session.

        A session in more than one of *rooms* receives the message tagged
        with the first room it belongs to.
        """
        delivered = 0
        seen: set[str] = set()
        for room in rooms:
            if not self.tracker.has_subscribers(room):
                continue
            message = RoomMessage(event=event, room=room, data=payload)
            for session in self.tracker.sessions_in(room):
                if session.id in seen:
                    continue
                seen.add(session.id)
                try:
                    if session.deliver(message):
                        delivered += 1
                except Exception:
                    logger.warning(
                        "Delivery to session %s failed",
                        session.id,
                        exc_info=True,
                        extra={"event": event, "room": room, "session": session.id, "subject": session.subject.id},
                    )
        if delivered:
            logger.debug("Broadcast %s to %d session(s)", event, delivered, extra={"event": event, "delivered": delivered})
        return delivered

    def publish(self, outcome: MutationOutcome) -> int:
        """Announce a committed mutation in its rooms."""
        if not outcome.changed:
            return 0
        return self.broadcast_rooms(rooms_for(outcome), outcome.kind, payload_for(outcome))

    def notify(self, notification: Notification) -> int:
        """Push one notification to its recipient's personal channel only."""
        return self.broadcast(user_room(notification.recipient_id), "notification:new", notification.to_dict())
