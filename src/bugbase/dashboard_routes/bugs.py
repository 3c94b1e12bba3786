"""Project, bug, comment, watcher and membership route handlers."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.requests import Request

from bugbase.dashboard_routes.common import (
    _current_subject,
    _error_response,
    _get_bool_param,
    _get_service,
    _parse_json_body,
    _parse_pagination,
)
from bugbase.models import Subject
from bugbase.pipeline import MutationOutcome
from bugbase.service import TrackerService

logger = logging.getLogger(__name__)

_BUG_FILTERS = {
    "status": "status",
    "priority": "priority",
    "severity": "severity",
    "assignee": "assignee_id",
    "reporter": "reporter_id",
    "search": "search",
}


def _outcome_body(outcome: MutationOutcome) -> dict[str, Any]:
    body: dict[str, Any] = {
        "event_id": outcome.event_id,
        "bug": outcome.bug.to_dict(),
        "activity": outcome.activity.to_dict() if outcome.activity is not None else None,
    }
    if outcome.comment is not None:
        body["comment"] = outcome.comment.to_dict()
    return body


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------


def create_router() -> APIRouter:
    """Build the APIRouter for project, bug and comment endpoints.

    NOTE: All handlers are async despite doing synchronous SQLite I/O. This
    serializes DB access on the event loop thread, avoiding concurrent
    multi-thread access to the shared DB connection.
    """
    router = APIRouter()

    # -- projects & members --------------------------------------------------

    @router.get("/projects")
    async def api_projects(
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse([p.to_dict() for p in service.list_projects(actor)])

    @router.get("/projects/{project_id}")
    async def api_project(
        project_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse(service.get_project(actor, project_id).to_dict())

    @router.get("/projects/{project_id}/members")
    async def api_members(
        project_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse([m.to_dict() for m in service.list_members(actor, project_id)])

    @router.post("/projects/{project_id}/members")
    async def api_add_member(
        project_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        subject_id = body.get("subject_id")
        if not isinstance(subject_id, str) or not subject_id:
            return _error_response("subject_id is required", "VALIDATION_ERROR", 400)
        capabilities = body.get("capabilities", ["comment"])
        if not isinstance(capabilities, list) or not all(isinstance(c, str) for c in capabilities):
            return _error_response("capabilities must be a list of strings", "VALIDATION_ERROR", 400)
        membership = await service.add_member(actor, project_id, subject_id, capabilities)
        return JSONResponse(membership.to_dict(), status_code=201)

    @router.delete("/projects/{project_id}/members/{subject_id}")
    async def api_remove_member(
        project_id: str,
        subject_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        await service.remove_member(actor, project_id, subject_id)
        return JSONResponse({"removed": subject_id})

    # -- bugs ----------------------------------------------------------------

    @router.get("/projects/{project_id}/bugs")
    async def api_list_bugs(
        project_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        params = request.query_params
        page = _parse_pagination(params)
        if isinstance(page, JSONResponse):
            return page
        descending = _get_bool_param(params, "desc", True)
        if isinstance(descending, JSONResponse):
            return descending
        limit, offset = page
        filters: dict[str, Any] = {dest: params[name] for name, dest in _BUG_FILTERS.items() if params.get(name)}
        result = service.list_bugs(
            actor,
            project_id,
            sort_by=params.get("sort", "created_at"),
            descending=descending,
            limit=limit,
            offset=offset,
            **filters,
        )
        return JSONResponse(result)

    @router.post("/projects/{project_id}/bugs")
    async def api_create_bug(
        project_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        outcome = await service.create_bug(actor, project_id, body)
        return JSONResponse(_outcome_body(outcome), status_code=201)

    @router.get("/bugs/{bug_id}")
    async def api_bug_detail(
        bug_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        bug = service.get_bug(actor, bug_id)
        detail = bug.to_dict()
        detail["watchers"] = [w.subject_id for w in service.list_watchers(actor, bug_id)]
        return JSONResponse(detail)

    @router.patch("/bugs/{bug_id}")
    async def api_update_bug(
        bug_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        outcome = await service.update_bug(actor, bug_id, body)
        return JSONResponse(_outcome_body(outcome))

    @router.delete("/bugs/{bug_id}")
    async def api_delete_bug(
        bug_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        outcome = await service.delete_bug(actor, bug_id)
        return JSONResponse(_outcome_body(outcome))

    @router.get("/bugs/{bug_id}/activity")
    async def api_bug_activity(
        bug_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse([e.to_dict() for e in service.list_activity(actor, bug_id)])

    # -- comments ------------------------------------------------------------

    @router.get("/bugs/{bug_id}/comments")
    async def api_comments(
        bug_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse([c.to_dict() for c in service.list_comments(actor, bug_id)])

    @router.post("/bugs/{bug_id}/comments")
    async def api_add_comment(
        bug_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        parent_id = body.get("parent_id")
        if parent_id is not None and not isinstance(parent_id, str):
            return _error_response("parent_id must be a string", "VALIDATION_ERROR", 400)
        outcome = await service.add_comment(actor, bug_id, body.get("content", ""), parent_id=parent_id)
        return JSONResponse(_outcome_body(outcome), status_code=201)

    @router.patch("/comments/{comment_id}")
    async def api_update_comment(
        comment_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        outcome = await service.update_comment(actor, comment_id, body.get("content", ""))
        return JSONResponse(_outcome_body(outcome))

    @router.delete("/comments/{comment_id}")
    async def api_delete_comment(
        comment_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        outcome = await service.delete_comment(actor, comment_id)
        return JSONResponse(_outcome_body(outcome))

    # -- watchers ------------------------------------------------------------

    @router.get("/bugs/{bug_id}/watchers")
    async def api_watchers(
        bug_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse([w.to_dict() for w in service.list_watchers(actor, bug_id)])

    @router.post("/bugs/{bug_id}/watchers")
    async def api_add_watcher(
        bug_id: str,
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        subject_id: str | None = None
        if await request.body():
            body = await _parse_json_body(request)
            if isinstance(body, JSONResponse):
                return body
            subject_id = body.get("subject_id")
        watcher = await service.add_watcher(actor, bug_id, subject_id)
        return JSONResponse(watcher.to_dict(), status_code=201)

    @router.delete("/bugs/{bug_id}/watchers/{subject_id}")
    async def api_remove_watcher(
        bug_id: str,
        subject_id: str,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        await service.remove_watcher(actor, bug_id, actor.id if subject_id == "me" else subject_id)
        return JSONResponse({"removed": subject_id})

    return router
