from __future__ import annotations

from typing import Any

from tenantplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "VALIDATION_ERROR", "Validation error"),
    401: _response("Unauthorized", "INVALID_CREDENTIAL", "Foreign credential is invalid or expired."),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "Admin token required"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    409: _response("Conflict", "DUPLICATE_TENANT", "Slug acme-inc is already taken"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _response("Service unavailable", "LEDGER_UNAVAILABLE", "Idempotency ledger is unavailable"),
}
