"""Error taxonomy shared by the store, the mutation pipeline and the HTTP layer.

Every error is terminal to the mutation attempt that raised it. ``code`` is a
stable machine-readable identifier surfaced verbatim in API error envelopes.
"""

from __future__ import annotations

from typing import Any, Literal

DenyReason = Literal[
    "NOT_A_MEMBER",
    "INSUFFICIENT_ROLE",
    "MISSING_CAPABILITY",
    "ASSIGNEE_NOT_MEMBER",
    "NOT_AUTHOR",
]


class BugbaseError(Exception):
    """Base class for all domain errors."""

    code = "BUGBASE_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def __str__(self) -> str:
        return self.message


class NotFound(BugbaseError, KeyError):
    code = "NOT_FOUND"


class Forbidden(BugbaseError):
    """Authorization denial. ``reason`` names the rule that denied."""

    code = "FORBIDDEN"

    def __init__(self, reason: DenyReason, message: str | None = None) -> None:
        super().__init__(message or f"Forbidden: {reason}", details={"reason": reason})
        self.reason: DenyReason = reason


class Conflict(BugbaseError):
    code = "CONFLICT"


class SequenceTaken(Conflict):
    """A bug number was claimed by a concurrent insert for the same project."""

    code = "SEQUENCE_TAKEN"


class InvalidAssignee(BugbaseError):
    code = "INVALID_ASSIGNEE"


class ValidationFailed(BugbaseError, ValueError):
    code = "VALIDATION_ERROR"


class AuthenticationFailed(BugbaseError):
    code = "UNAUTHENTICATED"
