from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from sqlsteward.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    steward_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sqlsteward.apps.api.response import API_VERSION
from sqlsteward.apps.api.routes.health import router as health_router
from sqlsteward.apps.api.routes.paths import router as paths_router
from sqlsteward.apps.api.routes.tools import router as tools_router
from sqlsteward.core.config import get_settings
from sqlsteward.core.errors import StewardError
from sqlsteward.core.logging import configure_logging
from sqlsteward.services.runtime import Services, build_services
from sqlsteward.services.telemetry import increment_counter


def create_app(services: Services | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Injected services belong to the caller; self-built ones are closed on shutdown.
        owned = services is None
        app.state.services = services or build_services()
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()

    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter("http_requests_total")
        if response.status_code >= 500:
            increment_counter("http_errors_total")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers.setdefault("Server-Timing", f"app;dur={latency_ms:.1f}")
        return response

    @app.exception_handler(StewardError)
    async def _steward_exception_handler(request: Request, exc: StewardError):
        return await steward_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(tools_router, prefix=f"/{API_VERSION}")
    app.include_router(paths_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Unversioned health for load balancers.
    app.include_router(health_router, include_in_schema=False)

    return app


app = create_app()
