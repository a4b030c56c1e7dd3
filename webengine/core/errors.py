from __future__ import annotations


class WebEngineError(Exception):
    """Base error for webengine."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Server error occurred") -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(WebEngineError):
    """User input rejected before any side effect."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationFailed(WebEngineError):
    """Credentials missing, wrong, or tied to an inactive account."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class PermissionDenied(WebEngineError):
    """Role or ownership check failed; never reveals whether the resource exists."""

    status_code = 403
    code = "AUTH_FORBIDDEN"

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class NotFound(WebEngineError):
    """Requested resource does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class InvalidTransition(WebEngineError):
    """Workflow state does not allow the requested transition."""

    status_code = 409
    code = "INVALID_STATE"


class BackupError(WebEngineError):
    """Backup dump, write, or verification failure."""


class MailDeliveryError(WebEngineError):
    """Mail transport failed to hand off a message."""
