"""WatchersMixin: explicit and implicit (bug, subject) watch pairs."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from bugbase.db_base import DBMixinProtocol
from bugbase.errors import Conflict
from bugbase.models import Watcher

if TYPE_CHECKING:
    from contextlib import AbstractContextManager


class WatchersMixin(DBMixinProtocol):
    if TYPE_CHECKING:

        def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    def insert_watcher(self, bug_id: str, subject_id: str) -> Watcher:
        """Explicit watch. Raises ``Conflict`` if the pair already exists."""
        now = self._now_iso()
        try:
            with self.transaction():
                self.conn.execute(
                    "INSERT INTO watchers (bug_id, subject_id, created_at) VALUES (?, ?, ?)",
                    (bug_id, subject_id, now),
                )
        except sqlite3.IntegrityError as exc:
            if "watchers.bug_id, watchers.subject_id" in str(exc):
                msg = f"Subject {subject_id} is already watching bug {bug_id}"
                raise Conflict(msg) from exc
            raise
        return Watcher(bug_id=bug_id, subject_id=subject_id, created_at=now)

    def ensure_watcher(self, bug_id: str, subject_id: str) -> bool:
        """Implicit watch. Returns True when a new pair was created."""
        with self.transaction():
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO watchers (bug_id, subject_id, created_at) VALUES (?, ?, ?)",
                (bug_id, subject_id, self._now_iso()),
            )
        return cursor.rowcount > 0

    def delete_watcher(self, bug_id: str, subject_id: str) -> bool:
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM watchers WHERE bug_id = ? AND subject_id = ?", (bug_id, subject_id))
        return cursor.rowcount > 0

    def is_watching(self, bug_id: str, subject_id: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM watchers WHERE bug_id = ? AND subject_id = ?", (bug_id, subject_id)).fetchone()
        return row is not None

    def list_watchers(self, bug_id: str) -> list[Watcher]:
        rows = self.conn.execute(
            "SELECT * FROM watchers WHERE bug_id = ? ORDER BY created_at, subject_id",
            (bug_id,),
        ).fetchall()
        return [Watcher(bug_id=r["bug_id"], subject_id=r["subject_id"], created_at=r["created_at"]) for r in rows]

    def watcher_ids(self, bug_id: str) -> list[str]:
        return [w.subject_id for w in self.list_watchers(bug_id)]
