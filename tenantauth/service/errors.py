"""Service-layer exceptions mapped to HTTP responses.

Each class carries an HTTP ``status_code`` and a stable ``error_code`` that is
rendered in the error envelope:

- unauthorized (401)
- forbidden (403)
- not_found (404)
- validation_error (400)
- conflict (409)
- server_error (500)

Leaf classes also carry a ``default_message`` so call sites can raise them
bare.
"""

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class InvalidCredentials(AuthenticationError):
    """Unknown identifier or wrong password; the two are never distinguished."""

    default_message = "invalid credentials"


class InvalidToken(AuthenticationError):
    """Malformed, forged, expired, wrong type, or its account is gone."""

    default_message = "invalid token"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class AccountLocked(ForbiddenError):
    default_message = "account is temporarily locked"


class AccountInactive(ForbiddenError):
    default_message = "account is inactive"


class NotAMember(ForbiddenError):
    # Unknown organizations and non-members get the same answer
    default_message = "organization not found or user not a member"


class InsufficientRole(ForbiddenError):
    default_message = "user does not have the required role"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class UserNotFound(NotFoundError):
    default_message = "user not found"


class OrganizationNotFound(NotFoundError):
    default_message = "organization not found"


class DepartmentNotFound(NotFoundError):
    default_message = "department not found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "ForbiddenError",
    "AccountLocked",
    "AccountInactive",
    "NotAMember",
    "InsufficientRole",
    "NotFoundError",
    "UserNotFound",
    "OrganizationNotFound",
    "DepartmentNotFound",
    "ConflictError",
    "ServerError",
]
