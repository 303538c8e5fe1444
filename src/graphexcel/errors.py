from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error for gateway operations.

    Each subclass carries the HTTP-equivalent status the tool surface reports.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        """Return extra fields merged into the error payload."""
        return {}

    def to_payload(self) -> dict[str, Any]:
        """Build the client-facing error payload.

        Returns:
            Error envelope with status, code, message and details.
        """
        error: dict[str, Any] = {
            "code": self.status_code,
            "type": self.code,
            "message": self.message,
        }
        error.update(self.details())
        return {"status": "error", "error": error}


class InvalidRangeFormat(GatewayError, ValueError):
    """Raised when an Excel address does not match a supported form."""

    status_code = 400
    code = "INVALID_RANGE_FORMAT"


class RequestValidationError(GatewayError, ValueError):
    """Raised when request arguments are missing or inconsistent."""

    status_code = 400
    code = "VALIDATION_FAILED"


class AuthenticationError(GatewayError):
    """Raised when a Graph access token cannot be acquired."""

    status_code = 401
    code = "AUTHENTICATION_FAILED"


class AccessDeniedError(GatewayError):
    """Raised when the capability model denies an operation."""

    status_code = 403
    code = "ACCESS_DENIED"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"details": self.reason}


class RangeDeniedError(GatewayError):
    """Raised when the range policy rejects a write."""

    status_code = 403

    def __init__(
        self,
        reason: str,
        *,
        code: str,
        allowed_ranges: list[str] | None = None,
    ) -> None:
        super().__init__("Range access denied")
        self.reason = reason
        self.code = code
        self.allowed_ranges = list(allowed_ranges or [])

    def details(self) -> dict[str, Any]:
        return {"details": self.reason, "allowedRanges": self.allowed_ranges}


class NotFoundError(GatewayError):
    """Raised when a drive, item or worksheet name has no match."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str, *, scope: str, available: list[str]) -> None:
        super().__init__(message)
        self.scope = scope
        self.available = list(available)

    def details(self) -> dict[str, Any]:
        return {"scope": self.scope, "available": self.available}


class RateLimitExceeded(GatewayError):
    """Raised when a caller exceeds its request window."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def details(self) -> dict[str, Any]:
        return {"retryAfter": self.retry_after}


class PolicyValidationError(GatewayError):
    """Raised when the range policy itself cannot be evaluated."""

    status_code = 500
    code = "VALIDATION_ERROR"

    def __init__(self, reason: str) -> None:
        super().__init__("Range validation failed")
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"details": self.reason}


class ServiceUnavailableError(GatewayError):
    """Raised when Microsoft Graph cannot be reached."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"


_GRAPH_CODE_STATUS = {
    "Forbidden": 403,
    "accessDenied": 403,
    "NotFound": 404,
    "itemNotFound": 404,
    "ItemNotFound": 404,
    "BadRequest": 400,
    "invalidRequest": 400,
    "InvalidArgument": 400,
    "Unauthorized": 401,
    "InvalidAuthenticationToken": 401,
    "TooManyRequests": 429,
    "activityLimitReached": 429,
    "InternalServerError": 502,
    "serviceNotAvailable": 502,
}


class GraphApiError(GatewayError):
    """Error response returned by Microsoft Graph."""

    code = "GRAPH_API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int,
        graph_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.graph_code = graph_code
        self.status_code = map_graph_status(upstream_status, graph_code)

    def details(self) -> dict[str, Any]:
        return {"graphCode": self.graph_code, "upstreamStatus": self.upstream_status}


def map_graph_status(upstream_status: int, graph_code: str | None) -> int:
    """Map a Graph status/error code pair to the status reported to callers.

    Args:
        upstream_status: HTTP status returned by Graph.
        graph_code: Graph `error.code` value when present.

    Returns:
        HTTP-equivalent status code.
    """
    if graph_code and graph_code in _GRAPH_CODE_STATUS:
        return _GRAPH_CODE_STATUS[graph_code]
    if upstream_status in (400, 401, 403, 404, 429):
        return upstream_status
    if upstream_status >= 500:
        return 502
    return 500


__all__ = [
    "AccessDeniedError",
    "AuthenticationError",
    "GatewayError",
    "GraphApiError",
    "InvalidRangeFormat",
    "NotFoundError",
    "PolicyValidationError",
    "RangeDeniedError",
    "RateLimitExceeded",
    "RequestValidationError",
    "ServiceUnavailableError",
    "map_graph_status",
]
