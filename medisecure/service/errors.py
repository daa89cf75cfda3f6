from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    ``reason`` is the machine-readable cause inside that family (for example
    ``plan_restricted`` vs ``cross_tenant``) so that callers and logs can tell
    failures apart. None of these errors are retried.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "invalid_input"
    # Whether ``reason`` may be returned to the client
    expose_reason: bool = True

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def public_detail(self) -> dict:
        if not self.expose_reason:
            return {}
        return {"reason": self.reason, **self.detail}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    reason = "invalid_input"


class WeakPasswordError(ValidationError):
    reason = "weak_password"


class AuthenticationError(ServiceError):
    """Bad credentials or an unusable session token (401).

    The client only ever sees the generic message; the reason stays in logs so
    responses do not reveal whether an e-mail exists or which check failed.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "invalid_credentials"
    expose_reason = False


class InvalidSignatureError(AuthenticationError):
    reason = "invalid_signature"


class TokenExpiredError(AuthenticationError):
    reason = "expired"


class IdentityProviderError(AuthenticationError):
    """External identity provider returned no usable identity (502)."""
    status_code = 502
    error_code = "identity_provider_error"
    reason = "identity_provider_error"


class MfaError(ServiceError):
    """Second-factor proof rejected (401)."""
    status_code = 401
    error_code = "mfa_failed"
    reason = "invalid_proof"


class AuthorizationError(ServiceError):
    """Authenticated caller denied by a permission, ownership, plan or tenant gate (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "permission_denied"


class ConfigurationError(ServiceError):
    """Feature disabled because its configuration is absent or placeholder (503)."""
    status_code = 503
    error_code = "not_configured"
    reason = "not_configured"


class StateError(ServiceError):
    """Record state does not allow the operation (409 by default)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class DuplicateEmailError(StateError):
    reason = "duplicate_email"


class NotFoundError(StateError):
    status_code = 404
    error_code = "not_found"
    reason = "not_found"


class ExpiredError(StateError):
    status_code = 410
    error_code = "expired"
    reason = "expired"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "IdentityProviderError",
    "MfaError",
    "AuthorizationError",
    "ConfigurationError",
    "StateError",
    "DuplicateEmailError",
    "NotFoundError",
    "ExpiredError",
]
