from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MalformedCookie(AuthenticationError):
    """Persistent-login cookie could not be decoded."""


class UnknownSeries(AuthenticationError):
    """Cookie names a series the store does not hold (stale cookie)."""


class TheftSuspected(AuthenticationError):
    """Token or fingerprint mismatch against a known series."""


class InvalidToken(TheftSuspected):
    pass


class FingerprintMismatch(TheftSuspected):
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RoleIneligible(ForbiddenError):
    """User holds none of the roles allowed to persist logins."""


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "MalformedCookie",
    "UnknownSeries",
    "TheftSuspected",
    "InvalidToken",
    "FingerprintMismatch",
    "ForbiddenError",
    "RoleIneligible",
    "ServerError",
]
