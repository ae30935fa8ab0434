from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code so the host service can translate it without string matching:
    - validation_error (400)
    - unauthorized / token_revoked / session_invalidated / token_family_revoked (401)
    - account_locked (423)
    - rate_limited / login_throttled (429)
    - server_error (500)
    - service_unavailable (503)
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


class ValidationError(ServiceError):
    """Input rejected at the API boundary, before any cache access (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenRevokedError(AuthenticationError):
    """Presented token, its family, or its user has been revoked (401)."""
    error_code = "token_revoked"


class AccountLockedError(ServiceError):
    """Identity is in a temporary lockout (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class LoginThrottledError(RateLimitedError):
    """Attempt arrived before the exponential backoff delay elapsed (429)."""
    error_code = "login_throttled"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServerError):
    """A dependency such as the shared cache is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenRevokedError",
    "AccountLockedError",
    "RateLimitedError",
    "LoginThrottledError",
    "ServerError",
    "ServiceUnavailableError",
]
