from __future__ import annotations

from typing import Any

from webengine.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_doc(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_doc(
        "Bad request",
        code="VALIDATION_ERROR",
        message="Subject must be between 5 and 255 characters.",
    ),
    401: _error_doc("Unauthorized", code="AUTH_UNAUTHORIZED", message="Authentication required"),
    403: _error_doc("Forbidden or CSRF failure", code="AUTH_FORBIDDEN", message="Access denied"),
    404: _error_doc("Not found", code="NOT_FOUND", message="Project not found"),
    409: _error_doc("Conflict", code="INVALID_STATE", message="Project is not pending moderation"),
    422: _error_doc("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_doc("Internal server error", code="INTERNAL_ERROR", message="Server error occurred"),
}
