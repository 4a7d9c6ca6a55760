from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from leadflow.apps.api.errors import (
    http_exception_handler,
    leadflow_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from leadflow.apps.api.response import API_VERSION
from leadflow.apps.api.routes.call_events import router as call_events_router
from leadflow.apps.api.routes.calls import router as calls_router
from leadflow.apps.api.routes.cron import router as cron_router
from leadflow.apps.api.routes.health import router as health_router
from leadflow.apps.api.routes.ingest import router as ingest_router
from leadflow.apps.api.routes.oci import router as oci_router
from leadflow.core.config import Settings, get_settings
from leadflow.core.errors import LeadflowError
from leadflow.core.logging import configure_logging
from leadflow.persistence.db import Database
from leadflow.persistence.guards import TenantPredicateError
from leadflow.providers.conversions.factory import get_conversion_provider
from leadflow.services.resilience import close_redis, open_redis
from leadflow.services.telemetry import record_request


def create_app(
    *,
    database: Database | None = None,
    redis: Any | None = None,
    provider: Any | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the API with explicit collaborators.

    Anything not injected is created in the lifespan and closed on shutdown;
    injected collaborators stay owned by the caller.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: list[str] = []
        if getattr(app.state, "database", None) is None:
            app.state.database = Database(settings=settings)
            owned.append("database")
        if getattr(app.state, "redis", None) is None:
            app.state.redis = open_redis(settings)
            owned.append("redis")
        if getattr(app.state, "provider", None) is None:
            app.state.provider = get_conversion_provider(settings)
            owned.append("provider")
        try:
            yield
        finally:
            if "provider" in owned:
                await app.state.provider.aclose()
            if "redis" in owned:
                await close_redis(app.state.redis)
            if "database" in owned:
                await app.state.database.close()

    app = FastAPI(title="Leadflow API", version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.redis = redis
    app.state.provider = provider

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(LeadflowError, leadflow_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        ingest_router,
        call_events_router,
        calls_router,
        oci_router,
        cron_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Leadflow API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["ApiKeyAuth"] = {"type": "apiKey", "in": "header", "name": "x-api-key"}
        bearer_prefixes = ("/v1/cron/", "/v1/oci/export", "/v1/oci/ack")
        for path, operations in schema.get("paths", {}).items():
            if not path.startswith(bearer_prefixes):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}, {"ApiKeyAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
