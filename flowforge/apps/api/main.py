from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowforge.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from flowforge.apps.api.response import API_VERSION
from flowforge.apps.api.routes.admin import router as admin_router
from flowforge.apps.api.routes.conversations import router as conversations_router
from flowforge.apps.api.routes.health import router as health_router
from flowforge.apps.api.routes.slots import router as slots_router
from flowforge.apps.api.routes.workflows import router as workflows_router
from flowforge.core.config import get_settings
from flowforge.core.context import AutomationContext, build_context
from flowforge.core.errors import FlowForgeError
from flowforge.core.logging import configure_logging
from flowforge.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


def create_app(context: AutomationContext | None = None) -> FastAPI:
    """Build the API; a supplied context is used as-is and never closed by the app."""
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "context", None) is None
        if owned:
            app.state.context = build_context(get_settings())
        try:
            yield
        finally:
            if owned:
                await app.state.context.aclose()
                app.state.context = None

    app = FastAPI(title="FlowForge API", version=API_VERSION, lifespan=lifespan)
    app.state.context = context

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request ids or assign one so log lines can be joined.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

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

    @app.exception_handler(FlowForgeError)
    async def _domain_exception_handler(request: Request, exc: FlowForgeError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(conversations_router, prefix=f"/{API_VERSION}")
    app.include_router(slots_router, prefix=f"/{API_VERSION}")
    app.include_router(workflows_router, prefix=f"/{API_VERSION}")
    # Operator routes are gated by admin_tenant_ids.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
