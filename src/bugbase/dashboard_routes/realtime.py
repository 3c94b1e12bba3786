"""WebSocket endpoint: room subscriptions, presence and event delivery.

Each connection gets a ``PresenceSession`` whose outbox is drained by a
dedicated sender task. The receive loop only handles control messages
(``join_room``, ``leave_room``, ``ping``); every message counts as a
heartbeat.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from fastapi import APIRouter
from starlette.websockets import WebSocket, WebSocketDisconnect

from bugbase.errors import AuthenticationFailed, BugbaseError
from bugbase.logging import ContextLogger, context_logger
from bugbase.models import Subject
from bugbase.presence import PresenceSession, parse_room
from bugbase.service import TrackerService
from bugbase.types.events import RoomMessage

logger = logging.getLogger(__name__)

UNAUTHENTICATED_CLOSE_CODE = 4401
TIMEOUT_CLOSE_CODE = 4408


def _reply_error(session: PresenceSession, room: str, message: str, code: str) -> None:
    session.deliver(RoomMessage(event="error", room=room, data={"message": message, "code": code}))


def _check_room_access(service: TrackerService, subject: Subject, room: str) -> None:
    """Raise if *subject* may not subscribe to *room*."""
    parsed = parse_room(room)
    if parsed is None:
        msg = f"Unknown room: {room}"
        raise ValueError(msg)
    if parsed.scope == "user":
        if parsed.entity_id != subject.id:
            raise ValueError("Personal channels are private")
    elif parsed.scope == "project":
        service.get_project(subject, parsed.entity_id or "")
    elif parsed.scope == "bug":
        service.get_bug(subject, parsed.entity_id or "")


def _handle_message(service: TrackerService, session: PresenceSession, raw: str, log: ContextLogger) -> None:
    tracker = service.tracker
    try:
        message: Any = json.loads(raw)
    except json.JSONDecodeError:
        _reply_error(session, "", "Messages must be JSON objects", "VALIDATION_ERROR")
        return
    if not isinstance(message, dict):
        _reply_error(session, "", "Messages must be JSON objects", "VALIDATION_ERROR")
        return

    kind = message.get("type")
    room = message.get("room", "")
    if kind == "ping":
        session.deliver(RoomMessage(event="pong", room="", data={}))
        return
    if kind not in ("join_room", "leave_room") or not isinstance(room, str) or not room:
        _reply_error(session, str(room), f"Unsupported message type: {kind}", "VALIDATION_ERROR")
        return

    if kind == "leave_room":
        tracker.leave_room(session, room)
        return
    try:
        _check_room_access(service, session.subject, room)
    except BugbaseError as exc:
        log.info("Join refused: %s", exc.message, extra={"room": room})
        _reply_error(session, room, exc.message, exc.code)
        return
    except ValueError as exc:
        _reply_error(session, room, str(exc), "VALIDATION_ERROR")
        return
    tracker.join_room(session, room)


async def _pump(websocket: WebSocket, session: PresenceSession, log: ContextLogger) -> None:
    """Drain the session outbox onto the socket until the session closes."""
    while True:
        message = await session.outbox.get()
        if message is None:
            # Closed by the tracker (heartbeat timeout); the client never said goodbye.
            log.info("Closing expired session %s", session.id)
            with contextlib.suppress(Exception):
                await websocket.close(code=TIMEOUT_CLOSE_CODE)
            return
        try:
            await websocket.send_json(message)
        except Exception:
            log.bind(room=message["room"]).warning("Send of %s failed", message["event"], exc_info=True, extra={"event": message["event"]})
            return


def create_router() -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        service: TrackerService = websocket.app.state.service
        try:
            subject = websocket.app.state.authenticator.authenticate(websocket.query_params.get("token"))
        except AuthenticationFailed as exc:
            logger.info("Refused websocket: %s", exc.message)
            await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE)
            return

        await websocket.accept()
        tracker = service.tracker
        session = tracker.connect(subject)
        log = context_logger(__name__, session=session.id, subject=subject.id)
        sender = asyncio.create_task(_pump(websocket, session, log))
        try:
            while not session.closed:
                raw = await websocket.receive_text()
                tracker.touch(session)
                _handle_message(service, session, raw, log)
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender
            tracker.disconnect(session)

    return router
