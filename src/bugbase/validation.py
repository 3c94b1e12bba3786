"""Shared validation functions for all entry points.

Pure functions with no FastAPI or Click dependencies. Each validator returns the
cleaned value or raises ``ValidationFailed``.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from bugbase.errors import ValidationFailed

_MAX_USERNAME_LENGTH = 64
_MAX_TITLE_LENGTH = 200
_MAX_CONTENT_LENGTH = 20_000
_USERNAME_RE = re.compile(r"^\w+$")
_PROJECT_KEY_RE = re.compile(r"^[A-Z][A-Z0-9]{1,9}$")


def _reject_control_chars(value: str, name: str, *, allow_newlines: bool = False) -> None:
    for ch in value:
        if allow_newlines and ch in "\n\r\t":
            continue
        cat = unicodedata.category(ch)
        if cat.startswith("C"):  # Cc (control) and Cf (format)
            msg = f"{name} must not contain control characters (found U+{ord(ch):04X})"
            raise ValidationFailed(msg)


def sanitize_username(value: Any) -> str:
    """Validate a username. Usernames must be mentionable, so only ``\\w`` chars."""
    if not isinstance(value, str):
        raise ValidationFailed("username must be a string")
    _reject_control_chars(value, "username")
    cleaned = value.strip()
    if not cleaned:
        raise ValidationFailed("username must not be empty")
    if len(cleaned) > _MAX_USERNAME_LENGTH:
        msg = f"username must be at most {_MAX_USERNAME_LENGTH} characters"
        raise ValidationFailed(msg)
    if not _USERNAME_RE.match(cleaned):
        raise ValidationFailed("username may only contain letters, digits and underscores")
    return cleaned


def validate_project_key(value: Any) -> str:
    if not isinstance(value, str) or not _PROJECT_KEY_RE.match(value.strip()):
        raise ValidationFailed("project key must be 2-10 uppercase letters or digits, starting with a letter")
    return value.strip()


def validate_title(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationFailed("title must be a string")
    _reject_control_chars(value, "title")
    cleaned = value.strip()
    if not cleaned:
        raise ValidationFailed("Title cannot be empty")
    if len(cleaned) > _MAX_TITLE_LENGTH:
        msg = f"Title must be at most {_MAX_TITLE_LENGTH} characters"
        raise ValidationFailed(msg)
    return cleaned


def validate_text(value: Any, name: str, *, required: bool = False) -> str:
    """Free text (descriptions, comments). Newlines and tabs are allowed."""
    if not isinstance(value, str):
        msg = f"{name} must be a string"
        raise ValidationFailed(msg)
    _reject_control_chars(value, name, allow_newlines=True)
    if required and not value.strip():
        msg = f"{name} cannot be empty"
        raise ValidationFailed(msg)
    if len(value) > _MAX_CONTENT_LENGTH:
        msg = f"{name} must be at most {_MAX_CONTENT_LENGTH} characters"
        raise ValidationFailed(msg)
    return value


def validate_choice(value: Any, valid: frozenset[str], name: str) -> str:
    if not isinstance(value, str) or value not in valid:
        msg = f"Invalid {name} '{value}'. Valid values: {', '.join(sorted(valid))}"
        raise ValidationFailed(msg)
    return value


def validate_hours(value: Any, name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        msg = f"{name} must be a number"
        raise ValidationFailed(msg)
    if value < 0:
        msg = f"{name} must be >= 0"
        raise ValidationFailed(msg)
    return float(value)


def validate_custom_fields(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationFailed("custom_fields must be an object")
    for k in value:
        if not isinstance(k, str) or not k.strip():
            raise ValidationFailed("Field key cannot be empty")
    return dict(value)


def validate_due_date(value: Any) -> str | None:
    """Accept ``YYYY-MM-DD`` (or a full ISO timestamp); returns the cleaned string."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationFailed("due_date must be an ISO date string")
    cleaned = value.strip()
    try:
        if len(cleaned) == 10:
            date.fromisoformat(cleaned)
        else:
            datetime.fromisoformat(cleaned)
    except ValueError as exc:
        msg = f"due_date is not a valid ISO date: {value!r}"
        raise ValidationFailed(msg) from exc
    return cleaned
