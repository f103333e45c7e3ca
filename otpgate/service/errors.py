from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so a transport layer can map them without inspecting
    messages:
    - validation_error (400)
    - invalid_code (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - challenge_expired (410)
    - attempts_exhausted (429)
    - delivery_failed (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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
    """Malformed identifier or input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Session or refresh token missing, expired or revoked (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Locked account, wrong role or bad first factor (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Unknown context, challenge or identity (404).

    Used uniformly so callers cannot tell a never-issued context from a
    consumed one.
    """
    status_code = 404
    error_code = "not_found"


class InvalidCodeError(ServiceError):
    """Submitted code does not match; the same context may be retried."""
    status_code = 400
    error_code = "invalid_code"
    retryable = True


class ChallengeTerminatedError(ServiceError):
    """Challenge can never succeed again; a new one must be issued."""


class ChallengeExpiredError(ChallengeTerminatedError):
    status_code = 410
    error_code = "challenge_expired"


class AttemptsExhaustedError(ChallengeTerminatedError):
    status_code = 429
    error_code = "attempts_exhausted"


class DeliveryError(ServiceError):
    """Email or SMS delivery of a code failed (502)."""
    status_code = 502
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidCodeError",
    "ChallengeTerminatedError",
    "ChallengeExpiredError",
    "AttemptsExhaustedError",
    "DeliveryError",
]
