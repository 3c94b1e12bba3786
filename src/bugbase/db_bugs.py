"""BugsMixin: bug row CRUD, numbering lookups and filtered listing.

Write primitives here never decide *whether* a write is allowed; the
mutation pipeline does that before calling in. Each primitive joins an
enclosing ``transaction()`` when there is one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import TYPE_CHECKING, Any

from bugbase.db_base import DBMixinProtocol, _loads_object
from bugbase.errors import NotFound, SequenceTaken, ValidationFailed
from bugbase.models import MUTABLE_FIELDS, Bug
from bugbase.types.core import PaginatedResult

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

logger = logging.getLogger(__name__)

_BUG_SELECT = "SELECT b.*, p.key AS project_key FROM bugs b JOIN projects p ON p.id = b.project_id"
_SORTABLE_COLUMNS = frozenset({"created_at", "updated_at", "number", "priority", "severity", "status", "title"})


def _bug_from_row(row: sqlite3.Row) -> Bug:
    return Bug(
        id=row["id"],
        project_id=row["project_id"],
        number=row["number"],
        title=row["title"],
        reporter_id=row["reporter_id"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"],
        severity=row["severity"],
        assignee_id=row["assignee_id"],
        environment=row["environment"] or "",
        version_found=row["version_found"] or "",
        version_fixed=row["version_fixed"] or "",
        due_date=row["due_date"],
        estimated_hours=row["estimated_hours"],
        actual_hours=row["actual_hours"],
        custom_fields=_loads_object(row["custom_fields"]),
        resolved_at=row["resolved_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        project_key=row["project_key"],
    )


def _column_value(name: str, value: Any) -> Any:
    return json.dumps(value) if name == "custom_fields" else value


class BugsMixin(DBMixinProtocol):
    """Bug rows. Numbering is enforced unique per project by the schema."""

    if TYPE_CHECKING:

        def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    def max_bug_number(self, project_id: str) -> int:
        """Highest number ever allocated in the project, deleted bugs included."""
        row = self.conn.execute(
            "SELECT MAX(n) AS n FROM ("
            " SELECT MAX(number) AS n FROM bugs WHERE project_id = ?"
            " UNION ALL"
            " SELECT MAX(CAST(json_extract(metadata, '$.number') AS INTEGER)) FROM activity_log"
            " WHERE project_id = ? AND action = 'CREATED'"
            ")",
            (project_id, project_id),
        ).fetchone()
        return int(row["n"] or 0)

    def insert_bug(
        self,
        project_id: str,
        number: int,
        reporter_id: str,
        fields: dict[str, Any],
        *,
        resolved_at: str | None = None,
    ) -> Bug:
        """Insert a bug row with an already-allocated *number*.

        Raises ``SequenceTaken`` when another writer claimed *number* first.
        """
        unknown = set(fields) - set(MUTABLE_FIELDS)
        if unknown:
            msg = f"Unknown bug fields: {', '.join(sorted(unknown))}"
            raise ValidationFailed(msg)
        bug_id = self._generate_unique_id("bugs", "bug")
        now = self._now_iso()
        columns = ["id", "project_id", "number", "reporter_id", "resolved_at", "created_at", "updated_at"]
        values: list[Any] = [bug_id, project_id, number, reporter_id, resolved_at, now, now]
        for name, value in fields.items():
            columns.append(name)
            values.append(_column_value(name, value))
        try:
            with self.transaction():
                self.conn.execute(
                    f"INSERT INTO bugs ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
                    values,
                )
        except sqlite3.IntegrityError as exc:
            if "bugs.project_id, bugs.number" in str(exc):
                msg = f"Bug number {number} already taken in project {project_id}"
                raise SequenceTaken(msg) from exc
            raise
        return self.get_bug(bug_id)

    def get_bug(self, bug_id: str) -> Bug:
        row = self.conn.execute(f"{_BUG_SELECT} WHERE b.id = ?", (bug_id,)).fetchone()
        if row is None:
            msg = f"Bug not found: {bug_id}"
            raise NotFound(msg)
        return _bug_from_row(row)

    def get_bug_by_number(self, project_id: str, number: int) -> Bug:
        row = self.conn.execute(f"{_BUG_SELECT} WHERE b.project_id = ? AND b.number = ?", (project_id, number)).fetchone()
        if row is None:
            msg = f"Bug not found: #{number} in project {project_id}"
            raise NotFound(msg)
        return _bug_from_row(row)

    def write_bug(self, bug_id: str, changes: dict[str, Any], *, resolved_at: str | None) -> Bug:
        """Persist *changes* (mutable fields only) and the derived resolved_at."""
        unknown = set(changes) - set(MUTABLE_FIELDS)
        if unknown:
            msg = f"Unknown bug fields: {', '.join(sorted(unknown))}"
            raise ValidationFailed(msg)
        assignments = [f"{name} = ?" for name in changes]
        values: list[Any] = [_column_value(name, value) for name, value in changes.items()]
        assignments += ["resolved_at = ?", "updated_at = ?"]
        values += [resolved_at, self._now_iso(), bug_id]
        with self.transaction():
            cursor = self.conn.execute(f"UPDATE bugs SET {', '.join(assignments)} WHERE id = ?", values)
        if cursor.rowcount == 0:
            msg = f"Bug not found: {bug_id}"
            raise NotFound(msg)
        return self.get_bug(bug_id)

    def delete_bug_row(self, bug_id: str) -> None:
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM bugs WHERE id = ?", (bug_id,))
        if cursor.rowcount == 0:
            msg = f"Bug not found: {bug_id}"
            raise NotFound(msg)

    def list_bugs(
        self,
        project_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
        severity: str | None = None,
        assignee_id: str | None = None,
        reporter_id: str | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        descending: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> PaginatedResult:
        if sort_by not in _SORTABLE_COLUMNS:
            msg = f"Cannot sort by '{sort_by}'. Valid columns: {', '.join(sorted(_SORTABLE_COLUMNS))}"
            raise ValidationFailed(msg)
        clauses = ["b.project_id = ?"]
        params: list[Any] = [project_id]
        for column, value in (
            ("status", status),
            ("priority", priority),
            ("severity", severity),
            ("assignee_id", assignee_id),
            ("reporter_id", reporter_id),
        ):
            if value is not None:
                clauses.append(f"b.{column} = ?")
                params.append(value)
        if search:
            clauses.append("(b.title LIKE ? ESCAPE '\\' OR b.description LIKE ? ESCAPE '\\')")
            pattern = "%" + search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
            params += [pattern, pattern]
        where = " AND ".join(clauses)
        total = self.conn.execute(f"SELECT COUNT(*) AS cnt FROM bugs b WHERE {where}", params).fetchone()["cnt"]
        direction = "DESC" if descending else "ASC"
        rows = self.conn.execute(
            f"{_BUG_SELECT} WHERE {where} ORDER BY b.{sort_by} {direction}, b.number {direction} LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return PaginatedResult(
            results=[_bug_from_row(r).to_dict() for r in rows],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(rows) < total,
        )
