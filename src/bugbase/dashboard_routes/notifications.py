"""Notification inbox route handlers. Every route is scoped to the caller."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.requests import Request

from bugbase.dashboard_routes.common import (
    _current_subject,
    _get_bool_param,
    _get_service,
    _parse_pagination,
)
from bugbase.models import Subject
from bugbase.service import TrackerService


def create_router() -> APIRouter:
    router = APIRouter()

    @router.get("/me")
    async def api_me(actor: Subject = Depends(_current_subject)) -> JSONResponse:
        return JSONResponse(actor.to_dict())

    @router.get("/notifications")
    async def api_notifications(
        request: Request,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        params = request.query_params
        page = _parse_pagination(params, default_limit=50)
        if isinstance(page, JSONResponse):
            return page
        unread_only = _get_bool_param(params, "unread", False)
        if isinstance(unread_only, JSONResponse):
            return unread_only
        limit, offset = page
        notifications = service.list_notifications(actor, unread_only=unread_only, limit=limit, offset=offset)
        return JSONResponse(
            {
                "notifications": [n.to_dict() for n in notifications],
                "unread": service.unread_count(actor),
                "limit": limit,
                "offset": offset,
            }
        )

    @router.post("/notifications/{notification_id}/read")
    async def api_mark_read(
        notification_id: int,
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse(service.mark_notification_read(actor, notification_id).to_dict())

    @router.post("/notifications/read-all")
    async def api_mark_all_read(
        actor: Subject = Depends(_current_subject),
        service: TrackerService = Depends(_get_service),
    ) -> JSONResponse:
        return JSONResponse({"marked": service.mark_all_notifications_read(actor)})

    return router
