from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowforge.apps.api.response import error_response
from flowforge.core.errors import (
    AllocationError,
    CapacityExceeded,
    ConcurrentTurnError,
    ConsistencyViolation,
    DatabaseError,
    DeploymentFailed,
    EngineError,
    EngineValidationError,
    FlowForgeError,
    LLMError,
    LLMTimeoutError,
    ProviderConfigError,
    SessionClosedError,
    SessionNotFoundError,
    SessionTenantMismatchError,
    SlotNotFoundError,
    ValidationError,
    WorkflowNotDeployedError,
    WorkflowNotFoundError,
)
from flowforge.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

# First match wins, so subclasses must precede their bases.
_DOMAIN_ERRORS: tuple[tuple[type[FlowForgeError], int, str], ...] = (
    (SessionTenantMismatchError, 403, "SESSION_TENANT_MISMATCH"),
    (SessionNotFoundError, 404, "SESSION_NOT_FOUND"),
    (SessionClosedError, 409, "SESSION_CLOSED"),
    (ConcurrentTurnError, 409, "CONCURRENT_TURN"),
    (CapacityExceeded, 503, "CAPACITY_EXCEEDED"),
    (SlotNotFoundError, 404, "SLOT_NOT_FOUND"),
    (ConsistencyViolation, 409, "CONSISTENCY_VIOLATION"),
    (AllocationError, 409, "ALLOCATION_CONFLICT"),
    (WorkflowNotFoundError, 404, "WORKFLOW_NOT_FOUND"),
    (WorkflowNotDeployedError, 409, "WORKFLOW_NOT_DEPLOYED"),
    (ValidationError, 422, "SCOPE_INVALID"),
    (EngineValidationError, 502, "ENGINE_REJECTED"),
    (EngineError, 502, "ENGINE_UNAVAILABLE"),
    (DeploymentFailed, 502, "DEPLOYMENT_FAILED"),
    (LLMTimeoutError, 504, "LLM_TIMEOUT"),
    (LLMError, 502, "LLM_ERROR"),
    (ProviderConfigError, 500, "PROVIDER_CONFIG_ERROR"),
    (DatabaseError, 500, "DATABASE_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details may be a plain message or a {code, message, ...} dict.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_domain_error(exc: FlowForgeError) -> tuple[int, str, dict[str, Any] | None]:
    details: dict[str, Any] | None = None
    if isinstance(exc, ConsistencyViolation):
        details = {"layer": exc.layer, "slot_id": exc.slot_id, "reason": exc.reason}
    elif isinstance(exc, ValidationError) and exc.unmapped:
        details = {"unmapped": exc.unmapped}
    elif isinstance(exc, EngineError) and exc.status_code is not None:
        details = {"engine_status": exc.status_code}
    for error_cls, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_cls):
            return status_code, code, details
    return 500, "INTERNAL_ERROR", details


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (unknown path, wrong method) share the same envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: FlowForgeError) -> JSONResponse:
    status_code, code, details = classify_domain_error(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc) or code, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    payload = error_response(request=request, code="TENANT_REQUIRED", message=exc.message)
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
