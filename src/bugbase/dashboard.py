"""HTTP + WebSocket surface for bugbase.

``create_app`` wires an explicitly constructed ``BugbaseDB`` into a
``TrackerService`` and hangs everything off ``app.state``; nothing is held
in module globals, so tests can build as many independent apps as they like.

Usage:
    bugbase serve                    # http://127.0.0.1:8377
    bugbase serve --port 9000        # Custom port
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from bugbase import __version__
from bugbase.auth import Authenticator, TokenAuthenticator
from bugbase.core import DB_FILENAME, DEFAULT_CONFIG, BugbaseDB, apply_env_overrides, find_bugbase_root, read_config
from bugbase.dashboard_routes import bugs as bug_routes
from bugbase.dashboard_routes import notifications as notification_routes
from bugbase.dashboard_routes import realtime as realtime_routes
from bugbase.dashboard_routes.common import bugbase_error_handler
from bugbase.errors import BugbaseError
from bugbase.presence import PresenceTracker
from bugbase.service import TrackerService
from bugbase.types.core import ProjectConfig

DEFAULT_PORT = DEFAULT_CONFIG["port"]

logger = logging.getLogger(__name__)


def create_app(
    db: BugbaseDB,
    *,
    config: ProjectConfig | None = None,
    authenticator: Authenticator | None = None,
    service: TrackerService | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    The presence reaper runs for the lifetime of the app (lifespan); it is
    not started when the app is driven without lifespan events, as under
    ``httpx.ASGITransport``.
    """
    cfg = ProjectConfig(**DEFAULT_CONFIG)
    cfg.update(config or {})
    svc = service or TrackerService(
        db,
        tracker=PresenceTracker(
            clock=db.clock,
            heartbeat_timeout=float(cfg["heartbeat_timeout"]),
            outbox_size=int(cfg["outbox_size"]),
        ),
    )

    @contextlib.asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        reaper = asyncio.create_task(svc.tracker.run_reaper(float(cfg["reaper_interval"])))
        try:
            yield
        finally:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper
            svc.tracker.close_all()

    app = FastAPI(title="bugbase", version=__version__, docs_url=None, redoc_url=None, lifespan=_lifespan)
    app.state.db = db
    app.state.config = cfg
    app.state.service = svc
    app.state.authenticator = authenticator or TokenAuthenticator(db)

    app.add_exception_handler(BugbaseError, bugbase_error_handler)
    app.include_router(bug_routes.create_router(), prefix="/api")
    app.include_router(notification_routes.create_router(), prefix="/api")
    app.include_router(realtime_routes.create_router())

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        tracker = svc.tracker
        return JSONResponse({"status": "ok", "version": __version__, "sessions": len(tracker.sessions)})

    return app


def main(port: int | None = None, *, host: str = "127.0.0.1", bugbase_dir: Path | None = None) -> None:
    """Start the server for the .bugbase/ directory found from cwd."""
    import uvicorn

    from bugbase.logging import setup_logging

    root = bugbase_dir or find_bugbase_root()
    setup_logging(root)
    config = apply_env_overrides(read_config(root))
    db = BugbaseDB(root / DB_FILENAME, check_same_thread=False)
    db.initialize()
    app = create_app(db, config=config)

    listen_port: Any = port or config.get("port", DEFAULT_PORT)
    logger.info("Serving %s on %s:%s", root, host, listen_port)
    print(f"bugbase: http://{host}:{listen_port}")
    try:
        uvicorn.run(app, host=host, port=int(listen_port), log_level="warning")
    finally:
        db.close()
