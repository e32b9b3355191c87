from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import get_settings, get_sync_orchestrator, get_telemetry
from backend.app.logging_config import configure_application_logging
from backend.app.repositories.common import PersistenceError
from backend.app.services.scheduler_service import SchedulerService

LOGGER = logging.getLogger("subfeed.app")

REQUEST_ID_HEADER = "X-Request-ID"
USER_SCOPED_PATH_PATTERN = re.compile(r"^/(?:sync|users)/(?P<user_id>[^/]+)")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    LOGGER.info(
        "sync service starting strategy=%s daily_quota=%s scheduler=%s",
        settings.discovery_strategy,
        settings.youtube_daily_quota_limit,
        "on" if settings.scheduler_enabled else "off",
    )

    scheduler: SchedulerService | None = None
    if settings.scheduler_enabled:
        scheduler = SchedulerService(
            sync_runner=get_sync_orchestrator(),
            poll_interval_seconds=settings.scheduler_poll_interval_seconds,
            run_on_start=settings.scheduler_run_on_start,
            telemetry=get_telemetry(),
            lock_path=settings.data_dir / "scheduler.lock",
        )
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


async def _bind_request_context(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
    request_id = incoming or str(uuid4())
    path = request.url.path
    context: dict[str, str] = {"http_request_id": request_id, "http_path": path}
    user_match = USER_SCOPED_PATH_PATTERN.match(path)
    if user_match is not None:
        context["sync_user_id"] = user_match.group("user_id")

    context_tokens = bind_contextvars(**context)
    try:
        with get_telemetry().span(
            "http.request", request_id=request_id, method=request.method, path=path
        ) as outcome:
            response = await call_next(request)
            outcome["status_code"] = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        reset_contextvars(**context_tokens)


async def _persistence_error_response(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error("storage failure path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": f"Storage unavailable: {exc}"})


def create_app() -> FastAPI:
    app = FastAPI(title="Subfeed Sync API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(_bind_request_context)
    app.add_exception_handler(PersistenceError, _persistence_error_response)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
