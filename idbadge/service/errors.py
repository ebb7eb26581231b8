from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An expected, client-facing failure of an identity operation.

    ``status_code`` and ``error_code`` are fixed per subclass and become the
    HTTP status and the envelope's ``error.code``. ``message`` is shown to the
    user as is, so it never says whether an email is registered. The optional
    ``message_code`` (``ReusedPassword``, ``InvitationAccepted``,
    ``InvitationNotFound``...) lets clients branch without parsing messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "The request could not be completed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        message_code: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.message_code = message_code
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, message_code={self.message_code!r})"


class ValidationError(ServiceError):
    status_code = 422
    error_code = "validation_error"
    default_message = "The request is not valid."


class AuthenticationError(ServiceError):
    """Wrong credentials, bad or expired badge, locked or frozen identity."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "Unauthorized."


class ForbiddenError(ServiceError):
    """The badge is valid but lacks the scope, role or membership required."""

    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden."


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found."


class ConflictError(ServiceError):
    """A conditional write lost: code already used, invitation accepted, password reused."""

    status_code = 409
    error_code = "conflict"
    default_message = "The request conflicts with the current state."


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many attempts. Please try again later."


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "An unexpected error occurred."


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
