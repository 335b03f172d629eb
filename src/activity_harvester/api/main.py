"""FastAPI application factory and entry point.

Creates the application instance, registers middleware and the error
envelope handlers, and mounts the route routers under ``/api``.

Usage::

    # Development server (from project root)
    uvicorn activity_harvester.api.main:app --reload
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from activity_harvester import __version__
from activity_harvester.api.envelope import failure, from_exception, status_for
from activity_harvester.config.settings import get_settings
from activity_harvester.core.exceptions import HarvesterError
from activity_harvester.core.logging_config import configure_logging, request_id_var
from activity_harvester.engine.extraction_client import ExtractionClient

# ---------------------------------------------------------------------------
# Logging configuration, applied once at import time so that records emitted
# during app construction are captured.  The level from settings is applied
# inside create_app().
# ---------------------------------------------------------------------------

configure_logging("INFO")

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Build and configure the FastAPI application.

    Separated from the module-level ``app`` singleton so that tests can
    call ``create_app()`` with patched settings and dependency overrides.

    Returns:
        A fully configured ``FastAPI`` instance.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description=(
            "Source lifecycle, scheduled extraction and admin review for "
            "published family activities."
        ),
        version=__version__,
        debug=settings.debug,
        redirect_slashes=False,
    )

    # ---- Middleware --------------------------------------------------------

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.middleware("http")
    async def request_logging_middleware(
        request: Request, call_next: Callable
    ) -> Response:
        """Log every request with its status and duration.

        Binds a ``request_id`` to the structlog context and echoes it in
        the ``X-Request-ID`` response header.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = getattr(response, "status_code", 500)
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn(
                "request_complete",
                status_code=status_code,
                elapsed_ms=elapsed_ms,
            )

        response.headers["X-Request-ID"] = request_id
        return response

    # ---- Error envelope ----------------------------------------------------

    @application.exception_handler(HarvesterError)
    async def harvester_error_handler(request: Request, exc: HarvesterError) -> JSONResponse:
        code = status_for(exc)
        log_fn = logger.error if code >= 500 else logger.info
        log_fn("request_failed", error_kind=exc.kind, error=str(exc), status_code=code)
        return from_exception(exc)

    @application.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return failure(
            "Request validation failed",
            "ValidationError",
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            {"errors": errors},
        )

    # ---- Routers -----------------------------------------------------------

    from activity_harvester.api.routes import (  # noqa: PLC0415
        health as health_routes,
        review,
        sources,
    )

    application.include_router(health_routes.router, prefix="/api")
    application.include_router(sources.router, prefix="/api/sources", tags=["sources"])
    application.include_router(review.router, prefix="/api", tags=["review"])

    # ---- Lifecycle events --------------------------------------------------

    @application.on_event("startup")
    async def on_startup() -> None:
        """Create the app-scoped extraction client."""
        http_client = httpx.AsyncClient(timeout=settings.extraction_timeout_seconds)
        application.state.http_client = http_client
        application.state.extraction_client = ExtractionClient(
            base_url=settings.extraction_api_url,
            api_key=settings.extraction_api_key,
            timeout=settings.extraction_timeout_seconds,
            default_user_agent=settings.default_user_agent,
            client=http_client,
        )
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            debug=settings.debug,
            log_level=settings.log_level,
        )

    @application.on_event("shutdown")
    async def on_shutdown() -> None:
        http_client = getattr(application.state, "http_client", None)
        if http_client is not None:
            await http_client.aclose()
        logger.info("application_shutdown")

    return application


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

app = create_app()
"""The FastAPI application instance passed to Uvicorn."""
