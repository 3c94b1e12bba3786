"""ActivityMixin: the append-only activity log.

Rows are never updated or deleted (schema triggers reject both), and
carry no foreign key to ``bugs`` so the trail survives bug deletion.
"""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING, Any

from bugbase.db_base import DBMixinProtocol, _loads_object
from bugbase.models import ActivityLogEntry

if TYPE_CHECKING:
    from contextlib import AbstractContextManager


def _entry_from_row(row: sqlite3.Row) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row["id"],
        bug_id=row["bug_id"],
        project_id=row["project_id"],
        actor_id=row["actor_id"],
        action=row["action"],
        description=row["description"],
        metadata=_loads_object(row["metadata"]),
        created_at=row["created_at"],
    )


class ActivityMixin(DBMixinProtocol):
    if TYPE_CHECKING:

        def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    def append_activity(
        self,
        bug_id: str,
        project_id: str,
        actor_id: str,
        action: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLogEntry:
        with self.transaction():
            cursor = self.conn.execute(
                "INSERT INTO activity_log (bug_id, project_id, actor_id, action, description, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (bug_id, project_id, actor_id, action, description, json.dumps(metadata or {}, default=str), self._now_iso()),
            )
        row = self.conn.execute("SELECT * FROM activity_log WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _entry_from_row(row)

    def list_activity(self, bug_id: str, *, limit: int = 50) -> list[ActivityLogEntry]:
        """Entries for a bug in creation order (oldest first)."""
        rows = self.conn.execute(
            "SELECT * FROM activity_log WHERE bug_id = ? ORDER BY created_at, id LIMIT ?",
            (bug_id, limit),
        ).fetchall()
        return [_entry_from_row(r) for r in rows]

    def count_activity(self, bug_id: str) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS cnt FROM activity_log WHERE bug_id = ?", (bug_id,)).fetchone()
        return int(row["cnt"])
