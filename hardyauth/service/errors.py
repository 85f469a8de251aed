from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
    - rate_limited (429)
    - conflict (409)
    - server_error (500)

    ``reason`` is the machine-readable cause recorded in the audit ledger.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if reason is not None:
            self.reason = reason
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request or policy validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    reason = "invalid_request"


class PasswordPolicyViolation(ValidationError):
    """Candidate password rejected by the policy engine."""
    reason = "password_policy"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthenticated"


class SessionMissing(AuthenticationError):
    reason = "session_missing"


class SessionNotFound(AuthenticationError):
    reason = "session_not_found"


class SessionExpired(AuthenticationError):
    reason = "session_expired"


class InvalidCredentials(AuthenticationError):
    reason = "invalid_credentials"


class AccountLocked(AuthenticationError):
    reason = "account_locked"


class MFARequired(AuthenticationError):
    """Password accepted but a second factor is still outstanding."""
    reason = "mfa_required"


class AuthorizationError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "forbidden"


class Forbidden(AuthorizationError):
    reason = "insufficient_role"


class TenantRequired(AuthorizationError):
    reason = "tenant_required"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate enrollment (409)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    reason = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.detail.setdefault("retry_after", retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    reason = "server_error"


class ConfigurationError(RuntimeError):
    """Required configuration missing at startup. Fatal, never retried."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordPolicyViolation",
    "AuthenticationError",
    "SessionMissing",
    "SessionNotFound",
    "SessionExpired",
    "InvalidCredentials",
    "AccountLocked",
    "MFARequired",
    "AuthorizationError",
    "Forbidden",
    "TenantRequired",
    "ConflictError",
    "RateLimitExceeded",
    "ServerError",
    "ConfigurationError",
]
