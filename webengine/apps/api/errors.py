from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from webengine.apps.api.response import error_response
from webengine.core.errors import WebEngineError


logger = logging.getLogger(__name__)

SERVER_ERROR_MESSAGE = "Server error occurred"

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "INVALID_STATE",
    422: "VALIDATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(request: Request, status_code: int, code: str, message: str, **kwargs: Any) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=kwargs.pop("details", None))
    return JSONResponse(content=payload, status_code=status_code, headers=kwargs.pop("headers", None))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers routing 404/405 and the dict details raised by dependencies.
    fallback = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    detail = exc.detail
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return _envelope(
            request,
            exc.status_code,
            str(detail.get("code") or fallback),
            str(detail.get("message") or "Request failed"),
            details=extra or None,
            headers=exc.headers,
        )
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return _envelope(request, exc.status_code, fallback, message, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Raw input is dropped; it may hold passwords.
    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in exc.errors()
    ]
    return _envelope(request, 422, "REQUEST_VALIDATION_ERROR", "Validation error", details={"errors": errors})


async def webengine_exception_handler(request: Request, exc: WebEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed path=%s code=%s error=%s", request.url.path, exc.code, exc)
        return _envelope(request, exc.status_code, exc.code, SERVER_ERROR_MESSAGE)
    return _envelope(request, exc.status_code, exc.code, exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", SERVER_ERROR_MESSAGE)


def register_exception_handlers(app: Any) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(WebEngineError, webengine_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
