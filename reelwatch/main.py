from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from reelwatch.api.errors import register_api_exception_handlers
from reelwatch.api.router import router as api_router
from reelwatch.http.middleware import RequestLoggingMiddleware, parse_skip_paths
from reelwatch.logging_config import configure_logging, parse_redact_fields
from reelwatch.runtime import Runtime, build_runtime
from reelwatch.settings import Settings, settings, validate_settings

logger = logging.getLogger(__name__)

configure_logging(
    level=settings.log_level,
    log_format=settings.log_format,
    redact_fields=parse_redact_fields(settings.log_redact_fields),
    include_uvicorn_access=settings.log_uvicorn_access,
)


def _log_startup(config: Settings) -> None:
    logger.info(
        "app.startup",
        extra={
            "event": "app.startup",
            "bot_enabled": config.bot_enabled,
            "crawler_enabled": config.crawler_enabled,
            "rendering_enabled": config.rendering_enabled,
            "crawler_base_url": config.crawler_base_url,
            "log_format": config.log_format,
        },
    )


def create_app(
    *,
    config: Settings = settings,
    runtime_factory: Callable[[Settings], Runtime] = build_runtime,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        validate_settings(config)
        _log_startup(config)
        runtime = runtime_factory(config)
        application.state.runtime = runtime
        application.state.started_at = time.monotonic()
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()
            application.state.runtime = None

    application = FastAPI(title=config.app_name, lifespan=lifespan)
    application.state.runtime = None
    application.state.started_at = time.monotonic()
    register_api_exception_handlers(application)
    application.add_middleware(
        RequestLoggingMiddleware,
        log_requests=config.log_requests,
        skip_paths=parse_skip_paths(config.log_request_skip_paths),
    )
    application.include_router(api_router)

    @application.get("/healthz")
    async def healthz(request: Request) -> JSONResponse:
        runtime = request.app.state.runtime
        uptime_seconds = round(time.monotonic() - request.app.state.started_at, 3)
        database_ok = runtime is not None and await runtime.store.ping()
        payload = {
            "status": "ok" if database_ok else "unhealthy",
            "database": "healthy" if database_ok else "unavailable",
            "uptime_seconds": uptime_seconds,
        }
        return JSONResponse(status_code=200 if database_ok else 503, content=payload)

    return application


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "reelwatch.main:app",
        host="0.0.0.0",
        port=settings.server_port,
        log_config=None,
        access_log=settings.log_uvicorn_access,
    )
