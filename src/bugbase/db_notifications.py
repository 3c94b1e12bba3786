"""NotificationsMixin: per-recipient notification rows.

``(recipient_id, event_id)`` is unique, so re-inserting a batch for the
same event is a no-op for recipients already notified.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from typing import TYPE_CHECKING

from bugbase.db_base import DBMixinProtocol, _loads_object
from bugbase.errors import NotFound
from bugbase.models import Notification, NotificationDraft

if TYPE_CHECKING:
    from contextlib import AbstractContextManager


def _notification_from_row(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        recipient_id=row["recipient_id"],
        event_id=row["event_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        data=_loads_object(row["data"]),
        is_read=bool(row["is_read"]),
        created_at=row["created_at"],
    )


class NotificationsMixin(DBMixinProtocol):
    if TYPE_CHECKING:

        def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    def insert_notifications(self, drafts: Iterable[NotificationDraft]) -> list[Notification]:
        """Persist a batch atomically. Returns only the rows actually inserted."""
        now = self._now_iso()
        inserted_ids: list[int] = []
        with self.transaction():
            for draft in drafts:
                cursor = self.conn.execute(
                    "INSERT OR IGNORE INTO notifications (recipient_id, event_id, type, title, message, data, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        draft.recipient_id,
                        draft.event_id,
                        draft.type,
                        draft.title,
                        draft.message,
                        json.dumps(draft.data, default=str),
                        now,
                    ),
                )
                if cursor.rowcount > 0 and cursor.lastrowid is not None:
                    inserted_ids.append(cursor.lastrowid)
        if not inserted_ids:
            return []
        rows = self.conn.execute(
            f"SELECT * FROM notifications WHERE id IN ({','.join('?' * len(inserted_ids))}) ORDER BY id",
            inserted_ids,
        ).fetchall()
        return [_notification_from_row(r) for r in rows]

    def list_notifications(
        self,
        recipient_id: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        sql = "SELECT * FROM notifications WHERE recipient_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        rows = self.conn.execute(sql, (recipient_id, limit, offset)).fetchall()
        return [_notification_from_row(r) for r in rows]

    def list_event_notifications(self, event_id: str) -> list[Notification]:
        rows = self.conn.execute("SELECT * FROM notifications WHERE event_id = ? ORDER BY id", (event_id,)).fetchall()
        return [_notification_from_row(r) for r in rows]

    def unread_count(self, recipient_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM notifications WHERE recipient_id = ? AND is_read = 0",
            (recipient_id,),
        ).fetchone()
        return int(row["cnt"])

    def mark_notification_read(self, recipient_id: str, notification_id: int) -> Notification:
        with self.transaction():
            cursor = self.conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND recipient_id = ?",
                (notification_id, recipient_id),
            )
        if cursor.rowcount == 0:
            msg = f"Notification not found: {notification_id}"
            raise NotFound(msg)
        row = self.conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        return _notification_from_row(row)

    def mark_all_notifications_read(self, recipient_id: str) -> int:
        with self.transaction():
            cursor = self.conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE recipient_id = ? AND is_read = 0",
                (recipient_id,),
            )
        return cursor.rowcount
