"""Custom exceptions for the studygate application."""

import math


class GatewayException(Exception):
    """Base class for studygate exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and error_code for consistent HTTP
    response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Gateway error"):
        self.message = message
        super().__init__(message)


class QuotaExceededError(GatewayException):
    """Raised when a caller has used up the budget of a rate-limited action.

    Expected and user-facing. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: float, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(message or "Rate limit exceeded. Please try again later.")

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds for the Retry-After header, never below 1."""
        return max(1, math.ceil(self.retry_after))


class StorageUnavailableError(GatewayException):
    """Raised by a window store when its backing storage cannot be used.

    Operational only. The rate limiter turns it into a fail-open admission
    and it never reaches the end user.
    """
    error_code = "storage_unavailable"

    def __init__(self, message: str = "Window store unavailable", backend: str | None = None):
        self.backend = backend
        super().__init__(message)


class WindowContentionError(GatewayException):
    """Raised by a window store when a key stays locked by other checks.

    The storage works; the key is busy. The rate limiter rejects the call
    with a short retry instead of admitting it uncounted.
    """
    error_code = "window_contention"

    def __init__(self, message: str = "Window key is busy", backend: str | None = None):
        self.backend = backend
        super().__init__(message)


class ProviderError(GatewayException):
    """Raised by an inference provider for HTTP, protocol or error-event failures."""
    status_code = 502
    error_code = "upstream_error"

    def __init__(self, message: str = "Inference provider error", upstream_status: int | None = None):
        self.upstream_status = upstream_status
        super().__init__(message)


class UpstreamStreamError(GatewayException):
    """Raised by the stream relay when the upstream stream fails.

    Carries the text forwarded before the failure so the caller can decide
    whether the partial output is usable.
    """
    status_code = 502
    error_code = "upstream_error"

    def __init__(self, message: str = "Upstream stream failed", partial: str = ""):
        self.partial = partial
        super().__init__(message)


class MalformedUpstreamOutputError(GatewayException):
    """Raised when generated text cannot be understood as the expected structure."""
    status_code = 422
    error_code = "unparseable_result"

    def __init__(self, message: str = "Could not understand the model output", raw: str = ""):
        self.raw = raw
        super().__init__(message)


class InvalidAssignmentError(GatewayException):
    """Raised when the model reports that the submitted text is not an assignment."""
    status_code = 400
    error_code = "invalid_assignment"

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason or "This text does not appear to be a valid assignment.")


class AuthenticationError(GatewayException):
    """Raised when API key authentication fails.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error_code = "authentication_failed"

    def __init__(self, detail: str = "Invalid or missing API key"):
        self.detail = detail
        super().__init__(detail)


class NotFoundError(GatewayException):
    """Raised when a row does not exist or belongs to another caller."""
    status_code = 404
    error_code = "not_found"

    def __init__(self, what: str = "Resource"):
        super().__init__(f"{what} not found")
