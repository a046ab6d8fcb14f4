from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds returned to callers of a workflow run."""

    INVALID_GRAPH = "invalid_graph"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTH_CONFIG = "auth_config"
    UPSTREAM_THROTTLED = "upstream_throttled"
    UPSTREAM_FAILURE = "upstream_failure"
    CANCELLED = "cancelled"
    # Never raised: a run whose structured output could not be parsed still
    # succeeds and carries this kind in its metadata only.
    RECONCILIATION_DEGRADED = "reconciliation_degraded"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``. Workflow failures use the ``ErrorKind`` values as codes;
    the generic codes cover request validation and lookups:
    - validation_error (400)
    - not_found (404)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidGraphError(ServiceError):
    """Workflow graph cannot be executed (empty node set, bad ids)."""
    status_code = 400
    error_code = ErrorKind.INVALID_GRAPH.value


class QuotaExceededError(ServiceError):
    """Monthly run quota exhausted for the user's tier (402)."""
    status_code = 402
    error_code = ErrorKind.QUOTA_EXCEEDED.value


class AuthConfigError(ServiceError):
    """AI backend not configured (503) or credentials rejected (401)."""
    status_code = 503
    error_code = ErrorKind.AUTH_CONFIG.value


class UpstreamThrottledError(ServiceError):
    """AI backend rate limited the call; the caller should back off."""
    status_code = 429
    error_code = ErrorKind.UPSTREAM_THROTTLED.value


class UpstreamFailureError(ServiceError):
    """AI backend failed, timed out, or returned nothing usable."""
    status_code = 502
    error_code = ErrorKind.UPSTREAM_FAILURE.value


class RunCancelledError(ServiceError):
    """Run aborted by the caller before the AI call resolved."""
    status_code = 499
    error_code = ErrorKind.CANCELLED.value


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ServerError",
    "InvalidGraphError",
    "QuotaExceededError",
    "AuthConfigError",
    "UpstreamThrottledError",
    "UpstreamFailureError",
    "RunCancelledError",
]
