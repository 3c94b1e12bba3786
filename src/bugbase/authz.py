"""Authorization decisions for every state-changing action.

``authorize`` is a pure function over a snapshot the caller assembles
(membership rows are looked up fresh for each mutation, never cached).
The rule table is evaluated top to bottom; the first matching rule decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from bugbase.errors import DenyReason, Forbidden
from bugbase.models import ROLE_CAPABILITIES, Capability, ProjectMembership, Subject

logger = logging.getLogger(__name__)

Action = Literal[
    "view",
    "create-bug",
    "update-bug",
    "delete-bug",
    "comment",
    "edit-comment",
    "delete-comment",
    "watch",
    "manage-members",
]

_MANAGER_ROLES = frozenset({"PROJECT_MANAGER", "ADMIN"})

# Capability each action needs once membership is established. Actions
# absent here are decided by ownership or role rules instead.
_REQUIRED_CAPABILITY: dict[str, Capability] = {
    "update-bug": Capability.MANAGE_BUGS,
    "create-bug": Capability.MANAGE_BUGS,
    "comment": Capability.COMMENT,
    "watch": Capability.COMMENT,
    "manage-members": Capability.MANAGE_PROJECT,
}


@dataclass(frozen=True)
class Target:
    """Snapshot of the entity an action touches.

    ``membership`` is the acting subject's membership on ``project_id``
    (None when absent). ``assignee_is_member`` is only consulted for
    create-bug with an assignee.
    """

    project_id: str
    membership: ProjectMembership | None = None
    reporter_id: str | None = None
    assignee_id: str | None = None
    assignee_is_member: bool = True
    author_id: str | None = None
    on_behalf_of: str | None = None


@dataclass(frozen=True)
class Allowed:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    reason: DenyReason
    message: str

    def __bool__(self) -> bool:
        return False


Decision = Allowed | Denied

ALLOWED = Allowed()


def effective_capabilities(subject: Subject, membership: ProjectMembership | None) -> Capability:
    """Union of role-derived and membership-derived capabilities."""
    if membership is None:
        return Capability.NONE
    return ROLE_CAPABILITIES.get(subject.role, Capability.NONE) | membership.capabilities


def authorize(subject: Subject, action: Action, target: Target) -> Decision:
    # Comment edits belong to the author alone; no role overrides this.
    if action == "edit-comment" and target.author_id != subject.id:
        return Denied("NOT_AUTHOR", "Only the author can edit this comment")

    if subject.role == "ADMIN":
        return ALLOWED

    if target.membership is None:
        return Denied("NOT_A_MEMBER", f"{subject.username} is not a member of project {target.project_id}")

    if action in ("view", "edit-comment"):
        return ALLOWED

    if action == "delete-bug":
        if subject.id == target.reporter_id or subject.role in _MANAGER_ROLES:
            return ALLOWED
        return Denied("INSUFFICIENT_ROLE", "Only the reporter or a project manager can delete this bug")

    if action == "delete-comment":
        if subject.id == target.author_id or subject.role in _MANAGER_ROLES:
            return ALLOWED
        return Denied("INSUFFICIENT_ROLE", "Only the author or a project manager can delete this comment")

    caps = effective_capabilities(subject, target.membership)
    required = _REQUIRED_CAPABILITY[action]
    if required not in caps:
        return Denied("MISSING_CAPABILITY", f"Action {action} requires the {required.names()[0]} capability")

    if action == "watch" and target.on_behalf_of not in (None, subject.id) and Capability.MANAGE_BUGS not in caps:
        return Denied("MISSING_CAPABILITY", "Adding another subject as watcher requires the manage-bugs capability")

    if action == "create-bug" and target.assignee_id is not None and not target.assignee_is_member:
        return Denied("ASSIGNEE_NOT_MEMBER", f"Assignee {target.assignee_id} is not a member of project {target.project_id}")

    return ALLOWED


def require(subject: Subject, action: Action, target: Target) -> None:
    """Raise ``Forbidden`` unless *subject* may perform *action* on *target*."""
    decision = authorize(subject, action, target)
    if isinstance(decision, Denied):
        logger.info("Denied %s for %s on project %s: %s", action, subject.id, target.project_id, decision.reason)
        raise Forbidden(decision.reason, decision.message)
