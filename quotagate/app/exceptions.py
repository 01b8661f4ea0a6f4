"""Custom exceptions for the admission engine."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AdmissionError(Exception):
    """Base class for admission exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and code for consistent HTTP response handling.
    """
    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"

    def __init__(
        self,
        message: str = "Admission error",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.details = details
        self.headers = headers or {}
        super().__init__(message)

    def to_dict(self, path: Optional[str] = None) -> Dict[str, Any]:
        """Render the error body returned to HTTP clients."""
        body: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "statusCode": self.status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.details:
            body["details"] = self.details
        if path is not None:
            body["path"] = path
        return body


class RateLimitExceededError(AdmissionError):
    """Raised when a caller has used up a quota window.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        retry_after: Optional[int] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.retry_after = retry_after
        if message is None:
            if retry_after is None:
                message = "Too many requests"
            else:
                message = f"Too many requests. Please try again in {retry_after} seconds"
        super().__init__(message, details=details, headers=headers)


class IdentifierResolutionError(AdmissionError):
    """Raised when a rate-limit identifier cannot be derived for a request.

    This is an admission configuration problem ("can't identify you"),
    never a quota violation. Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    code = "IDENTIFIER_UNRESOLVED"

    def __init__(self, message: str = "Caller key missing for rate limiting"):
        super().__init__(message)


class StoreUnavailableError(AdmissionError):
    """Raised by the shared counter store on I/O errors or timeouts.

    Recovered internally by switching to the fallback counter.
    """
    status_code = 503
    code = "STORE_UNAVAILABLE"


class FallbackUnavailableError(AdmissionError):
    """Raised by the fallback counter when the durable store also failed.

    Recovered internally by failing open for the affected window.
    """
    status_code = 503
    code = "FALLBACK_UNAVAILABLE"
