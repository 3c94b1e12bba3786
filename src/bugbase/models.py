"""Domain records and constrained vocabularies.

Records are plain dataclasses built by the store from SQLite rows. Mutable
bug state is expressed as *snapshots* (plain dicts of the mutable fields) so
the pipeline and the activity recorder can diff before/after without caring
about storage.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from bugbase.errors import ValidationFailed

# ---------------------------------------------------------------------------
# Constrained-string Literal types
# ---------------------------------------------------------------------------

Role = Literal["REPORTER", "DEVELOPER", "QA", "PROJECT_MANAGER", "ADMIN"]
BugStatus = Literal[
    "NEW",
    "IN_PROGRESS",
    "IN_REVIEW",
    "RESOLVED",
    "CLOSED",
    "REOPENED",
    "DUPLICATE",
    "WONT_FIX",
    "CANNOT_REPRODUCE",
]
Priority = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
Severity = Literal["TRIVIAL", "MINOR", "MAJOR", "CRITICAL", "BLOCKER"]
NotificationType = Literal[
    "BUG_CREATED",
    "BUG_UPDATED",
    "BUG_DELETED",
    "STATUS_CHANGE",
    "ASSIGNED",
    "COMMENT",
    "MENTION",
]

VALID_ROLES: frozenset[str] = frozenset({"REPORTER", "DEVELOPER", "QA", "PROJECT_MANAGER", "ADMIN"})
VALID_STATUSES: frozenset[str] = frozenset(
    {"NEW", "IN_PROGRESS", "IN_REVIEW", "RESOLVED", "CLOSED", "REOPENED", "DUPLICATE", "WONT_FIX", "CANNOT_REPRODUCE"}
)
RESOLVED_STATUSES: frozenset[str] = frozenset({"RESOLVED", "CLOSED", "DUPLICATE", "WONT_FIX", "CANNOT_REPRODUCE"})
VALID_PRIORITIES: frozenset[str] = frozenset({"LOW", "MEDIUM", "HIGH", "CRITICAL"})
VALID_SEVERITIES: frozenset[str] = frozenset({"TRIVIAL", "MINOR", "MAJOR", "CRITICAL", "BLOCKER"})


def is_resolved(status: str) -> bool:
    return status in RESOLVED_STATUSES


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class Capability(enum.Flag):
    """Fixed-shape capability set held via role or project membership.

    Stored as an integer bitmask; parsed from names at write time so the
    store never holds an unknown flag.
    """

    NONE = 0
    MANAGE_PROJECT = enum.auto()
    MANAGE_BUGS = enum.auto()
    COMMENT = enum.auto()
    TEST = enum.auto()

    @classmethod
    def parse(cls, names: Iterable[str]) -> Capability:
        """Build a capability set from names like ``manage-bugs`` or ``MANAGE_BUGS``."""
        result = cls.NONE
        for raw in names:
            key = raw.strip().upper().replace("-", "_")
            if not key:
                continue
            member = cls.__members__.get(key)
            if member is None or member is cls.NONE:
                valid = ", ".join(_CAPABILITY_NAMES.values())
                msg = f"Unknown capability '{raw}'. Valid capabilities: {valid}"
                raise ValidationFailed(msg)
            result |= member
        return result

    @classmethod
    def from_mask(cls, mask: int) -> Capability:
        if mask & ~ALL_CAPABILITIES.value:
            msg = f"Capability mask {mask} contains unknown bits"
            raise ValidationFailed(msg)
        return cls(mask)

    def names(self) -> list[str]:
        return [name for cap, name in _CAPABILITY_NAMES.items() if cap in self]


_CAPABILITY_NAMES: dict[Capability, str] = {
    Capability.MANAGE_PROJECT: "manage-project",
    Capability.MANAGE_BUGS: "manage-bugs",
    Capability.COMMENT: "comment",
    Capability.TEST: "test",
}

ALL_CAPABILITIES = Capability.MANAGE_PROJECT | Capability.MANAGE_BUGS | Capability.COMMENT | Capability.TEST

ROLE_CAPABILITIES: dict[str, Capability] = {
    "ADMIN": ALL_CAPABILITIES,
    "PROJECT_MANAGER": ALL_CAPABILITIES,
    "QA": Capability.MANAGE_BUGS | Capability.COMMENT | Capability.TEST,
    "DEVELOPER": Capability.MANAGE_BUGS | Capability.COMMENT,
    "REPORTER": Capability.COMMENT,
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Subject:
    id: str
    username: str
    role: str = "REPORTER"
    full_name: str = ""
    email: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "full_name": self.full_name,
            "email": self.email,
            "created_at": self.created_at,
        }

    def presence_dict(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username, "full_name": self.full_name}


@dataclass(frozen=True)
class Project:
    id: str
    key: str
    name: str
    description: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ProjectMembership:
    project_id: str
    subject_id: str
    capabilities: Capability = Capability.NONE
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "subject_id": self.subject_id,
            "capabilities": self.capabilities.names(),
            "created_at": self.created_at,
        }


# Fields whose change is described field-by-field in the activity log.
TRACKED_FIELDS: tuple[str, ...] = ("status", "priority", "severity", "assignee_id", "title")

# Every field a command may change. reporter_id, number and project_id are
# immutable once assigned and are deliberately absent.
MUTABLE_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "status",
    "priority",
    "severity",
    "assignee_id",
    "environment",
    "version_found",
    "version_fixed",
    "due_date",
    "estimated_hours",
    "actual_hours",
    "custom_fields",
)


@dataclass
class Bug:
    id: str
    project_id: str
    number: int
    title: str
    reporter_id: str
    description: str = ""
    status: str = "NEW"
    priority: str = "MEDIUM"
    severity: str = "MAJOR"
    assignee_id: str | None = None
    environment: str = ""
    version_found: str = ""
    version_fixed: str = ""
    due_date: str | None = None
    estimated_hours: float | None = None
    actual_hours: float | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)
    resolved_at: str | None = None
    created_at: str = ""
    updated_at: str = ""
    # Computed (joined, not stored on the row)
    project_key: str = ""

    @property
    def display_key(self) -> str:
        return f"{self.project_key}-{self.number}" if self.project_key else f"#{self.number}"

    def snapshot(self) -> dict[str, Any]:
        """Mutable-field view used for diffing and merging."""
        return {name: getattr(self, name) for name in MUTABLE_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.display_key,
            "project_id": self.project_id,
            "number": self.number,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "severity": self.severity,
            "reporter_id": self.reporter_id,
            "assignee_id": self.assignee_id,
            "environment": self.environment,
            "version_found": self.version_found,
            "version_fixed": self.version_fixed,
            "due_date": self.due_date,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "custom_fields": self.custom_fields,
            "resolved_at": self.resolved_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Comment:
    id: str
    bug_id: str
    author_id: str
    content: str
    parent_id: str | None = None
    is_edited: bool = False
    created_at: str = ""
    updated_at: str = ""
    # Computed
    mentions: list[str] = field(default_factory=list)
    replies: list[Comment] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bug_id": self.bug_id,
            "author_id": self.author_id,
            "content": self.content,
            "parent_id": self.parent_id,
            "is_edited": self.is_edited,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "mentions": self.mentions,
            "replies": [r.to_dict() for r in self.replies],
        }


@dataclass(frozen=True)
class Watcher:
    bug_id: str
    subject_id: str
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"bug_id": self.bug_id, "subject_id": self.subject_id, "created_at": self.created_at}


@dataclass(frozen=True)
class ActivityLogEntry:
    id: int
    bug_id: str
    project_id: str
    actor_id: str
    action: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bug_id": self.bug_id,
            "project_id": self.project_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "description": self.description,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Notification:
    id: int
    recipient_id: str
    event_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "event_id": self.event_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "is_read": self.is_read,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class NotificationDraft:
    """A notification computed by fan-out but not yet persisted."""

    recipient_id: str
    event_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
