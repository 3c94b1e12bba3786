"""Shared helpers and dependencies for API route modules."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from fastapi.responses import JSONResponse
from starlette.requests import Request

from bugbase.auth import parse_bearer
from bugbase.errors import (
    AuthenticationFailed,
    BugbaseError,
    Conflict,
    Forbidden,
    InvalidAssignee,
    NotFound,
    ValidationFailed,
)
from bugbase.models import Subject
from bugbase.service import TrackerService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BOOL_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_BOOL_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

# Most specific class first; SequenceTaken falls through to Conflict.
_STATUS_FOR_ERROR: tuple[tuple[type[BugbaseError], int], ...] = (
    (NotFound, 404),
    (Forbidden, 403),
    (Conflict, 409),
    (InvalidAssignee, 400),
    (ValidationFailed, 400),
    (AuthenticationFailed, 401),
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


def status_for(exc: BugbaseError) -> int:
    for cls, status_code in _STATUS_FOR_ERROR:
        if isinstance(exc, cls):
            return status_code
    return 500


async def bugbase_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render any ``BugbaseError`` escaping a handler as the error envelope."""
    if not isinstance(exc, BugbaseError):
        raise exc
    response = _error_response(exc.message, exc.code, status_for(exc), exc.details)
    if isinstance(exc, AuthenticationFailed):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


async def _parse_json_body(request: Request) -> dict[str, Any] | JSONResponse:
    """Parse and validate a JSON object body, returning 400 on failure."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError, UnicodeDecodeError):
        return _error_response("Invalid JSON body", "VALIDATION_ERROR", 400)
    if not isinstance(body, dict):
        return _error_response("Request body must be a JSON object", "VALIDATION_ERROR", 400)
    return body


def _safe_int(value: str, name: str, *, min_value: int | None = None) -> int | JSONResponse:
    """Parse a query-param string to int, returning a 400 error response on failure."""
    try:
        result = int(value)
    except (ValueError, TypeError):
        return _error_response(
            f'Invalid value for {name}: "{value}". Must be an integer.',
            "VALIDATION_ERROR",
            400,
        )
    if min_value is not None and result < min_value:
        return _error_response(
            f"Invalid value for {name}: {result}. Must be >= {min_value}.",
            "VALIDATION_ERROR",
            400,
        )
    return result


def _parse_pagination(
    params: Mapping[str, str],
    default_limit: int = 20,
) -> tuple[int, int] | JSONResponse:
    """Extract ``limit`` and ``offset`` from query params with validation."""
    limit = _safe_int(params.get("limit", str(default_limit)), "limit", min_value=1)
    if not isinstance(limit, int):
        return limit
    offset = _safe_int(params.get("offset", "0"), "offset", min_value=0)
    if not isinstance(offset, int):
        return offset
    return min(limit, 100), offset


def _get_bool_param(params: Mapping[str, str], name: str, default: bool) -> bool | JSONResponse:
    """Extract a boolean query param, returning *default* when absent."""
    raw = params.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _BOOL_TRUE_VALUES:
        return True
    if value in _BOOL_FALSE_VALUES:
        return False
    return _error_response(
        f'Invalid value for {name}: "{raw}". Must be one of true/false, 1/0, yes/no, on/off.',
        "VALIDATION_ERROR",
        400,
        {"param": name, "value": raw},
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
# Async so they run on the event loop thread alongside the SQLite handle.


async def _get_service(request: Request) -> TrackerService:
    service: TrackerService = request.app.state.service
    return service


async def _current_subject(request: Request) -> Subject:
    """Resolve the bearer token on the request; raises ``AuthenticationFailed``."""
    token = parse_bearer(request.headers.get("authorization"))
    subject: Subject = request.app.state.authenticator.authenticate(token)
    return subject
