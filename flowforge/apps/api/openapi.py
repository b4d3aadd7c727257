from __future__ import annotations

from typing import Any

from flowforge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "TENANT_REQUIRED", "X-Tenant-Id header is required"),
    403: _response("Forbidden", "SESSION_TENANT_MISMATCH", "session tenant_id does not match"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    409: _response("Conflict", "SESSION_CLOSED", "session is completed"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}

ENGINE_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    502: _response(
        "Execution engine failure",
        "ENGINE_UNAVAILABLE",
        "engine returned 503",
        details={"engine_status": 503},
    ),
    503: _response("No capacity", "CAPACITY_EXCEEDED", "no slot available"),
}
