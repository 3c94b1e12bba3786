"""CommentsMixin: threaded comments and the derived mention rows."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from typing import TYPE_CHECKING

from bugbase.db_base import DBMixinProtocol, _placeholders
from bugbase.errors import NotFound
from bugbase.models import Comment

if TYPE_CHECKING:
    from contextlib import AbstractContextManager


def _comment_from_row(row: sqlite3.Row, mentions: list[str] | None = None) -> Comment:
    return Comment(
        id=row["id"],
        bug_id=row["bug_id"],
        author_id=row["author_id"],
        content=row["content"],
        parent_id=row["parent_id"],
        is_edited=bool(row["is_edited"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        mentions=mentions or [],
    )


class CommentsMixin(DBMixinProtocol):
    """Comments (threaded by parent reference) and mentions."""

    if TYPE_CHECKING:

        def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    # -- Comments ------------------------------------------------------------

    def insert_comment(self, bug_id: str, author_id: str, content: str, *, parent_id: str | None = None) -> Comment:
        comment_id = self._generate_unique_id("comments", "cmt")
        now = self._now_iso()
        with self.transaction():
            self.conn.execute(
                "INSERT INTO comments (id, bug_id, author_id, parent_id, content, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (comment_id, bug_id, author_id, parent_id, content, now, now),
            )
        return self.get_comment(comment_id)

    def get_comment(self, comment_id: str) -> Comment:
        row = self.conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
        if row is None:
            msg = f"Comment not found: {comment_id}"
            raise NotFound(msg)
        mentions = self._mention_usernames([comment_id])
        return _comment_from_row(row, mentions.get(comment_id))

    def write_comment_content(self, comment_id: str, content: str) -> Comment:
        with self.transaction():
            cursor = self.conn.execute(
                "UPDATE comments SET content = ?, is_edited = 1, updated_at = ? WHERE id = ?",
                (content, self._now_iso(), comment_id),
            )
        if cursor.rowcount == 0:
            msg = f"Comment not found: {comment_id}"
            raise NotFound(msg)
        return self.get_comment(comment_id)

    def delete_comment_row(self, comment_id: str) -> None:
        """Delete a comment; replies and mentions cascade."""
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
        if cursor.rowcount == 0:
            msg = f"Comment not found: {comment_id}"
            raise NotFound(msg)

    def list_comments(self, bug_id: str) -> list[Comment]:
        """Top-level comments oldest first, each carrying its nested replies."""
        rows = self.conn.execute(
            "SELECT * FROM comments WHERE bug_id = ? ORDER BY created_at, rowid",
            (bug_id,),
        ).fetchall()
        mentions = self._mention_usernames([r["id"] for r in rows])
        by_id = {r["id"]: _comment_from_row(r, mentions.get(r["id"])) for r in rows}
        roots: list[Comment] = []
        for row in rows:
            comment = by_id[row["id"]]
            parent = by_id.get(row["parent_id"]) if row["parent_id"] else None
            if parent is None:
                roots.append(comment)
            else:
                parent.replies.append(comment)
        return roots

    # -- Mentions ------------------------------------------------------------

    def _mention_usernames(self, comment_ids: list[str]) -> dict[str, list[str]]:
        if not comment_ids:
            return {}
        rows = self.conn.execute(
            f"SELECT m.comment_id, s.username FROM mentions m JOIN subjects s ON s.id = m.subject_id "
            f"WHERE m.comment_id IN ({_placeholders(comment_ids)}) ORDER BY s.username",
            comment_ids,
        ).fetchall()
        result: dict[str, list[str]] = {}
        for r in rows:
            result.setdefault(r["comment_id"], []).append(r["username"])
        return result

    def mentioned_subject_ids(self, bug_id: str, comment_id: str | None = None) -> set[str]:
        """Subjects mentioned by a comment, or by the bug description when *comment_id* is None."""
        if comment_id is None:
            rows = self.conn.execute(
                "SELECT subject_id FROM mentions WHERE bug_id = ? AND comment_id IS NULL",
                (bug_id,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT subject_id FROM mentions WHERE bug_id = ? AND comment_id = ?",
                (bug_id, comment_id),
            ).fetchall()
        return {r["subject_id"] for r in rows}

    def replace_mentions(self, bug_id: str, comment_id: str | None, subject_ids: Iterable[str]) -> None:
        with self.transaction():
            if comment_id is None:
                self.conn.execute("DELETE FROM mentions WHERE bug_id = ? AND comment_id IS NULL", (bug_id,))
            else:
                self.conn.execute("DELETE FROM mentions WHERE bug_id = ? AND comment_id = ?", (bug_id, comment_id))
            for subject_id in sorted(set(subject_ids)):
                self.conn.execute(
                    "INSERT OR IGNORE INTO mentions (bug_id, comment_id, subject_id) VALUES (?, ?, ?)",
                    (bug_id, comment_id, subject_id),
                )
