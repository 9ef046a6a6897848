"""
Exception taxonomy for the image studio backend.

Every error raised by the engine derives from ImageStudioError, which carries
an HTTP-like status code, a stable error code and a category used by the
fallback protocol and the API layer:

- configuration: no active configuration, backend disabled (expected at first run)
- availability: backend temporarily unavailable or rate limited
- validation: request rejected before any processing starts
- transient: timeouts, malformed responses, upstream 5xx
- fatal: authentication failures (never retried against the same backend)
- persistence: storing a produced variant failed
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

RATE_LIMIT_KEYWORDS = ("429", "rate limit", "rate_limit", "too many requests")

DEFAULT_STATUS_MESSAGES: Dict[int, str] = {
    400: "Bad Request - Invalid request format or parameters",
    401: "Unauthorized - Invalid or missing API key",
    403: "Forbidden - API key does not have required permissions",
    404: "Not Found - Model or endpoint not found",
    429: "Rate Limit Exceeded - Too many requests",
    500: "Internal Server Error - AI service error",
    502: "Bad Gateway - AI service unavailable",
    503: "Service Unavailable - AI service temporarily down",
}


class ImageStudioError(Exception):
    """Base exception for all image studio errors."""

    status_code = 500
    error_code = "E_INTERNAL_ERROR"
    category = "system"
    retryable = False

    def __init__(self, detail: str):
        self.detail = detail
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "success": False,
            "error": self.error_code,
            "detail": self.detail,
            "category": self.category,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }


# Configuration


class NoConfigurationError(ImageStudioError):
    """No active backend configuration exists yet (first run, not an alarm)."""

    status_code = 503
    error_code = "E_NO_CONFIGURATION"
    category = "configuration"

    def __init__(self, detail: str = "No active API configuration. Configure backend credentials first."):
        super().__init__(detail)


class BackendUnavailableError(ImageStudioError):
    """The requested backend is not enabled or not configured."""

    status_code = 503
    error_code = "E_AI_MODEL_UNAVAILABLE"
    category = "configuration"

    def __init__(self, backend_id: str, available: Iterable[str] = ()):
        self.backend_id = backend_id
        self.available = list(available)
        listing = ", ".join(self.available) or "none"
        super().__init__(f"Backend {backend_id} is not available or not configured. Available backends: {listing}")


# Availability


class NoBackendsAvailableError(ImageStudioError):
    status_code = 503
    error_code = "E_NO_BACKENDS_AVAILABLE"
    category = "availability"
    retryable = True

    def __init__(self, detail: str = "No backends available for processing"):
        super().__init__(detail)


# Backend failures


class BackendError(ImageStudioError):
    """
    Failure reported by (or while talking to) an external backend.

    Attributes:
        http_status: Upstream HTTP status if the failure came from a response
        backend_id: Backend that produced the failure, when known
    """

    status_code = 502
    error_code = "E_AI_MODEL_FAILED"
    category = "transient"
    retryable = True

    def __init__(self, detail: str, http_status: Optional[int] = None, backend_id: Optional[str] = None):
        self.http_status = http_status
        self.backend_id = backend_id
        super().__init__(detail)


class RateLimitedError(BackendError):
    status_code = 429
    error_code = "E_AI_MODEL_RATE_LIMITED"
    category = "availability"

    def __init__(self, detail: str = DEFAULT_STATUS_MESSAGES[429], backend_id: Optional[str] = None):
        super().__init__(detail, http_status=429, backend_id=backend_id)


class AuthenticationFailedError(BackendError):
    status_code = 502
    error_code = "E_AUTH_INVALID"
    category = "fatal"
    retryable = False


class BackendTimeoutError(BackendError):
    status_code = 504
    error_code = "E_AI_MODEL_TIMEOUT"


class InvalidBackendResponseError(BackendError):
    error_code = "E_AI_MODEL_INVALID_RESPONSE"


# Validation and lookups


class RequestValidationError(ImageStudioError):
    """Request rejected before any job is created."""

    status_code = 400
    error_code = "E_BAD_REQUEST"
    category = "validation"


class InvalidStatusError(RequestValidationError):
    error_code = "E_INVALID_STATUS"

    def __init__(self, status: str, valid: Iterable[str]):
        super().__init__(f"Invalid status: {status}. Must be one of: {', '.join(valid)}")


class FeatureNotFoundError(ImageStudioError):
    status_code = 404
    error_code = "E_FEATURE_NOT_FOUND"
    category = "validation"

    def __init__(self, feature_code: str):
        super().__init__(f"Feature {feature_code} not found")


class ResourceNotFoundError(ImageStudioError):
    status_code = 404
    error_code = "E_NOT_FOUND"
    category = "validation"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} with ID {resource_id} not found")


class JobNotFoundError(ResourceNotFoundError):
    error_code = "E_JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__("Job", job_id)


class InvalidTransitionError(ImageStudioError):
    status_code = 409
    error_code = "E_INVALID_TRANSITION"
    category = "state"

    def __init__(self, job_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class PersistenceError(ImageStudioError):
    error_code = "E_STORAGE_IO"
    category = "persistence"


def is_rate_limited(exc: BaseException) -> bool:
    """Transport-agnostic rate-limit predicate (HTTP 429 or a matching keyword)."""
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, BackendError) and exc.http_status == 429:
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in RATE_LIMIT_KEYWORDS)


def is_fatal(exc: BaseException) -> bool:
    """Authentication failures abort retries against the backend that raised them."""
    if isinstance(exc, AuthenticationFailedError):
        return True
    return isinstance(exc, BackendError) and exc.http_status in (401, 403)


def parse_api_error(status: int, error_text: str) -> str:
    """Extract a readable message from an upstream error body."""
    try:
        parsed = json.loads(error_text)
    except (TypeError, ValueError):
        return DEFAULT_STATUS_MESSAGES.get(status, f"HTTP {status}: {error_text}")

    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if parsed.get("message"):
            return str(parsed["message"])
    return error_text or DEFAULT_STATUS_MESSAGES.get(status, f"HTTP {status}")


def backend_error_for_status(status: int, error_text: str, backend_id: Optional[str] = None) -> BackendError:
    """Map an upstream HTTP failure onto the backend error taxonomy."""
    message = parse_api_error(status, error_text)
    if status == 429:
        return RateLimitedError(message, backend_id=backend_id)
    if status in (401, 403):
        return AuthenticationFailedError(f"Authentication error: {message}", http_status=status, backend_id=backend_id)
    return BackendError(message, http_status=status, backend_id=backend_id)
