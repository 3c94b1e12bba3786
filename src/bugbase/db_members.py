"""MembersMixin: subjects, projects, memberships and API token digests.

All methods access ``self.conn`` etc. via Python's MRO when composed
into ``BugbaseDB``.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from typing import TYPE_CHECKING

from bugbase.db_base import DBMixinProtocol, _placeholders
from bugbase.errors import Conflict, NotFound
from bugbase.models import VALID_ROLES, Capability, Project, ProjectMembership, Subject
from bugbase.validation import sanitize_username, validate_choice, validate_project_key, validate_title

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

logger = logging.getLogger(__name__)


def _subject_from_row(row: sqlite3.Row) -> Subject:
    return Subject(
        id=row["id"],
        username=row["username"],
        role=row["role"],
        full_name=row["full_name"] or "",
        email=row["email"] or "",
        created_at=row["created_at"],
    )


def _project_from_row(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        key=row["key"],
        name=row["name"],
        description=row["description"] or "",
        created_at=row["created_at"],
    )


def _membership_from_row(row: sqlite3.Row) -> ProjectMembership:
    return ProjectMembership(
        project_id=row["project_id"],
        subject_id=row["subject_id"],
        capabilities=Capability.from_mask(row["capabilities"]),
        created_at=row["created_at"],
    )


class MembersMixin(DBMixinProtocol):
    """Subjects, projects and project memberships."""

    if TYPE_CHECKING:

        def transaction(self) -> AbstractContextManager[sqlite3.Connection]: ...

    # -- Subjects ------------------------------------------------------------

    def create_subject(
        self,
        username: str,
        *,
        role: str = "REPORTER",
        full_name: str = "",
        email: str = "",
    ) -> Subject:
        username = sanitize_username(username)
        validate_choice(role, VALID_ROLES, "role")
        if self.conn.execute("SELECT 1 FROM subjects WHERE username = ?", (username,)).fetchone() is not None:
            msg = f"Username already taken: {username}"
            raise Conflict(msg)
        subject_id = self._generate_unique_id("subjects", "usr")
        with self.transaction():
            self.conn.execute(
                "INSERT INTO subjects (id, username, role, full_name, email, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (subject_id, username, role, full_name, email, self._now_iso()),
            )
        logger.info("Created subject %s (%s, role=%s)", username, subject_id, role)
        return self.get_subject(subject_id)

    def get_subject(self, subject_id: str) -> Subject:
        row = self.conn.execute("SELECT * FROM subjects WHERE id = ?", (subject_id,)).fetchone()
        if row is None:
            msg = f"Subject not found: {subject_id}"
            raise NotFound(msg)
        return _subject_from_row(row)

    def get_subject_by_username(self, username: str) -> Subject:
        row = self.conn.execute("SELECT * FROM subjects WHERE username = ?", (username,)).fetchone()
        if row is None:
            msg = f"Subject not found: {username}"
            raise NotFound(msg)
        return _subject_from_row(row)

    def find_subjects_by_usernames(self, usernames: Iterable[str]) -> list[Subject]:
        """Resolve usernames to subjects. Unknown names are silently absent."""
        names = sorted(set(usernames))
        if not names:
            return []
        rows = self.conn.execute(
            f"SELECT * FROM subjects WHERE username IN ({_placeholders(names)}) ORDER BY username",
            names,
        ).fetchall()
        return [_subject_from_row(r) for r in rows]

    def get_subjects(self, subject_ids: Iterable[str]) -> list[Subject]:
        ids = sorted(set(subject_ids))
        if not ids:
            return []
        rows = self.conn.execute(f"SELECT * FROM subjects WHERE id IN ({_placeholders(ids)})", ids).fetchall()
        return [_subject_from_row(r) for r in rows]

    # -- API tokens ----------------------------------------------------------

    def store_token_digest(self, token_hash: str, subject_id: str) -> None:
        self.get_subject(subject_id)
        with self.transaction():
            self.conn.execute(
                "INSERT INTO api_tokens (token_hash, subject_id, created_at) VALUES (?, ?, ?)",
                (token_hash, subject_id, self._now_iso()),
            )

    def subject_for_token_digest(self, token_hash: str) -> Subject | None:
        row = self.conn.execute(
            "SELECT s.* FROM api_tokens t JOIN subjects s ON s.id = t.subject_id WHERE t.token_hash = ?",
            (token_hash,),
        ).fetchone()
        return _subject_from_row(row) if row is not None else None

    # -- Projects ------------------------------------------------------------

    def create_project(self, key: str, name: str, *, description: str = "") -> Project:
        key = validate_project_key(key)
        name = validate_title(name)
        if self.conn.execute("SELECT 1 FROM projects WHERE key = ?", (key,)).fetchone() is not None:
            msg = f"Project key already in use: {key}"
            raise Conflict(msg)
        project_id = self._generate_unique_id("projects", "prj")
        with self.transaction():
            self.conn.execute(
                "INSERT INTO projects (id, key, name, description, created_at) VALUES (?, ?, ?, ?, ?)",
                (project_id, key, name, description, self._now_iso()),
            )
        logger.info("Created project %s (%s)", key, project_id)
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Project:
        row = self.conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            msg = f"Project not found: {project_id}"
            raise NotFound(msg)
        return _project_from_row(row)

    def get_project_by_key(self, key: str) -> Project:
        row = self.conn.execute("SELECT * FROM projects WHERE key = ?", (key,)).fetchone()
        if row is None:
            msg = f"Project not found: {key}"
            raise NotFound(msg)
        return _project_from_row(row)

    def list_projects_for(self, subject_id: str) -> list[Project]:
        rows = self.conn.execute(
            "SELECT p.* FROM projects p JOIN project_members m ON m.project_id = p.id WHERE m.subject_id = ? ORDER BY p.key",
            (subject_id,),
        ).fetchall()
        return [_project_from_row(r) for r in rows]

    # -- Memberships ---------------------------------------------------------

    def get_membership(self, project_id: str, subject_id: str) -> ProjectMembership | None:
        row = self.conn.execute(
            "SELECT * FROM project_members WHERE project_id = ? AND subject_id = ?",
            (project_id, subject_id),
        ).fetchone()
        return _membership_from_row(row) if row is not None else None

    def list_members(self, project_id: str) -> list[ProjectMembership]:
        rows = self.conn.execute(
            "SELECT * FROM project_members WHERE project_id = ? ORDER BY created_at, subject_id",
            (project_id,),
        ).fetchall()
        return [_membership_from_row(r) for r in rows]

    def member_ids(self, project_id: str, subject_ids: Iterable[str]) -> set[str]:
        """Return the subset of *subject_ids* holding a membership on *project_id*."""
        ids = sorted(set(subject_ids))
        if not ids:
            return set()
        rows = self.conn.execute(
            f"SELECT subject_id FROM project_members WHERE project_id = ? AND subject_id IN ({_placeholders(ids)})",
            [project_id, *ids],
        ).fetchall()
        return {r["subject_id"] for r in rows}

    def insert_membership(self, project_id: str, subject_id: str, capabilities: Capability) -> ProjectMembership:
        # Capability.from_mask re-validates, so an out-of-range mask never reaches the table.
        mask = Capability.from_mask(capabilities.value).value
        try:
            with self.transaction():
                self.conn.execute(
                    "INSERT INTO project_members (project_id, subject_id, capabilities, created_at) VALUES (?, ?, ?, ?)",
                    (project_id, subject_id, mask, self._now_iso()),
                )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc) or "PRIMARY KEY" in str(exc):
                msg = f"Subject {subject_id} is already a member of project {project_id}"
                raise Conflict(msg) from exc
            raise
        membership = self.get_membership(project_id, subject_id)
        if membership is None:
            msg = f"Membership vanished for {subject_id} in project {project_id}"
            raise NotFound(msg)
        return membership

    def delete_membership(self, project_id: str, subject_id: str) -> bool:
        with self.transaction():
            cursor = self.conn.execute(
                "DELETE FROM project_members WHERE project_id = ? AND subject_id = ?",
                (project_id, subject_id),
            )
        return cursor.rowcount > 0
