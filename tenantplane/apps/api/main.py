from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from tenantplane.apps.api.errors import register_exception_handlers
from tenantplane.apps.api.response import API_VERSION
from tenantplane.apps.api.routes.admin import router as admin_router
from tenantplane.apps.api.routes.auth import router as auth_router
from tenantplane.apps.api.routes.health import router as health_router
from tenantplane.apps.api.routes.ops import router as ops_router
from tenantplane.apps.api.routes.registration import router as registration_router
from tenantplane.apps.api.routes.webhooks import router as webhooks_router
from tenantplane.core.logging import configure_logging
from tenantplane.services.container import ServiceContainer, build_container
from tenantplane.services.telemetry import record_request


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/auth/register-organization",
    "/v1/auth/registration-status/{idempotency_key}",
    "/v1/auth/token",
    "/v1/auth/refresh",
    "/v1/webhooks/identity",
}


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Build process-scoped state once; an injected container is owned by the caller.
        owned = getattr(app.state, "container", None) is None
        if owned:
            app.state.container = build_container()
        logger.info("api_started owned_container=%s", owned)
        try:
            yield
        finally:
            if owned:
                await app.state.container.aclose()
                app.state.container = None

    app = FastAPI(title="tenantplane API", lifespan=lifespan)
    app.state.container = container

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

    register_exception_handlers(app)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(registration_router, prefix=f"/{API_VERSION}")
    # Identity provider lifecycle events.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="tenantplane API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Mark bearer-protected operations; public ones authenticate by body or signature.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="tenantplane API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
