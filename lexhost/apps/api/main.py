from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from lexhost.apps.api.errors import (
    http_exception_handler,
    lexhost_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from lexhost.apps.api.routes.admin_admins import router as admin_admins_router
from lexhost.apps.api.routes.admin_backfill import router as admin_backfill_router
from lexhost.apps.api.routes.admin_lexicons import router as admin_lexicons_router
from lexhost.apps.api.routes.admin_network_lexicons import router as admin_network_lexicons_router
from lexhost.apps.api.routes.admin_records import router as admin_records_router
from lexhost.apps.api.routes.admin_stats import router as admin_stats_router
from lexhost.apps.api.routes.health import router as health_router
from lexhost.apps.api.routes.xrpc import router as xrpc_router
from lexhost.core.config import get_settings
from lexhost.core.errors import LexhostError
from lexhost.core.logging import configure_logging
from lexhost.persistence.db import get_session
from lexhost.services.admins import bootstrap_admin
from lexhost.services.telemetry import record_request


logger = logging.getLogger(__name__)

_PUBLIC_PREFIXES = ("/health", "/xrpc/")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Seed the first admin; a missing schema must not block startup.
    try:
        async with get_session() as session:
            await bootstrap_admin(session)
    except SQLAlchemyError as exc:
        logger.warning("admin_bootstrap_skipped error=%s", type(exc).__name__)
    yield


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(LexhostError)
    async def _lexhost_exception_handler(request: Request, exc: LexhostError):
        return await lexhost_exception_handler(request, exc)

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

    app.include_router(health_router)
    # Public XRPC surface; callers are identified by the trusted DID header.
    app.include_router(xrpc_router)
    # Admin management surface consumed by the dashboard.
    app.include_router(admin_lexicons_router)
    app.include_router(admin_network_lexicons_router)
    app.include_router(admin_records_router)
    app.include_router(admin_stats_router)
    app.include_router(admin_backfill_router)
    app.include_router(admin_admins_router)

    def custom_openapi() -> dict:
        # Inject bearer auth for admin routes into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=settings.app_name, version="1.0.0", routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path.startswith(_PUBLIC_PREFIXES):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
