from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    All errors carry stable error codes. Each exception class defines both an
    HTTP status_code and an error_code:
    - unauthorized (401)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - backend_unavailable (503)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ValidationFailed(ServiceError):
    """A store returned something unexpected, such as a corrupt payload (500)."""
    status_code = 500
    error_code = "server_error"


class BackendUnavailable(ServiceError):
    """A backing store could not complete the operation (503)."""
    status_code = 503
    error_code = "backend_unavailable"

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        operation: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        merged = dict(detail or {})
        if backend:
            merged.setdefault("backend", backend)
        if operation:
            merged.setdefault("operation", operation)
        super().__init__(message, detail=merged)
        self.backend = backend
        self.operation = operation


class OperationTimeout(BackendUnavailable):
    """A store call exceeded its deadline."""


# ============================================================================
# Credential rejections
#
# Every subclass surfaces to clients as the same opaque 401; the concrete type
# is only visible in logs.
# ============================================================================


class CredentialRejected(ServiceError):
    """The presented credential cannot be used (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialNotFound(CredentialRejected):
    pass


class CredentialExpired(CredentialRejected):
    pass


class OTPNotFound(CredentialNotFound):
    def __init__(self, message: str = "otp not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPExpired(CredentialExpired):
    def __init__(self, message: str = "otp expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPAttemptsExhausted(CredentialRejected):
    def __init__(self, message: str = "otp attempts exhausted", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPMismatch(CredentialRejected):
    def __init__(self, message: str = "otp code mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFound(CredentialNotFound):
    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "ValidationFailed",
    "BackendUnavailable",
    "OperationTimeout",
    "CredentialRejected",
    "CredentialNotFound",
    "CredentialExpired",
    "OTPNotFound",
    "OTPExpired",
    "OTPAttemptsExhausted",
    "OTPMismatch",
    "SessionNotFound",
]
