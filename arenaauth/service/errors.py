from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An auth decision the caller has to see.

    ``status_code`` and ``error_code`` are class attributes; the API layer
    renders them into the error envelope unchanged, so the codes here are
    the ones clients match on.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Bad input: unknown token type, naive expiry, non-profile field."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """The token was issued by us but its session is revoked or past expiry."""


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Locked accounts get their own code so clients can show the right screen."""
    error_code = "account_locked"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate role name, duplicate current assignment, taken email."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
]
