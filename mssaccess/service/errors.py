from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that API clients may branch on. Messages for authentication failures are
    deliberately generic so they never reveal whether an account exists.
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
    """Policy violation or malformed input (400).

    ``detail["errors"]`` carries the itemized reasons when more than one rule failed.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, errors: Optional[list[str]] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if errors:
            detail = {**detail, "errors": list(errors)}
        super().__init__(message, detail=detail, **kwargs)
        self.errors = list(errors or [])


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialError(AuthenticationError):
    """Primary credential mismatch or unknown account (401)."""
    error_code = "invalid_credential"


class InvalidCodeError(AuthenticationError):
    """MFA code rejected (401)."""
    error_code = "invalid_code"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class NoActiveSessionError(AuthenticationError):
    """Refresh presented for a session that is no longer active (401)."""
    error_code = "no_active_session"


class AccountLockedError(ServiceError):
    """Lockout threshold reached (423).

    ``detail`` carries ``locked_until`` and ``retry_after_seconds`` when known.
    """

    status_code = 423
    error_code = "account_locked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Referenced entity missing or not in the expected state (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a second active grant (409)."""
    status_code = 409
    error_code = "conflict"


class TransactionFailureError(ServiceError):
    """A multi-step storage transaction aborted and was rolled back (500)."""
    status_code = 500
    error_code = "transaction_failed"


class TransientError(ServiceError):
    """Storage or cache unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialError",
    "InvalidCodeError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenRevokedError",
    "NoActiveSessionError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "TransactionFailureError",
    "TransientError",
    "ServerError",
]
