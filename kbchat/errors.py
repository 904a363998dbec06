"""
Structured error handling for the chat service.

Every failure carries the HTTP status and the user-facing reply it maps to,
so the HTTP edge can render the ``{reply, unsure}`` shape without knowing
which component failed.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class KBChatError(Exception):
    """
    Base exception for the chat service.

    All service-specific errors inherit from this class.
    """

    status_code: int = 500
    reply: str = "Beklager – noe gikk galt."

    def __init__(
        self,
        message: str,
        error_code: str = "KBCHAT_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize error.

        Args:
            message: Human-readable error message (for logs, not for end users)
            error_code: Machine-readable error code
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for structured logs"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "status_code": self.status_code,
            "context": self.context,
        }

    def to_response_body(self) -> Dict[str, Any]:
        """Client-facing body: same fields as a normal reply, always unsure."""
        return {"reply": self.reply, "unsure": True}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class RetriableError(KBChatError):
    """Transient failure; the caller may try again (once, for the provider)."""

    def __init__(self, message: str, error_code: str = "RETRIABLE_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, error_code, **kwargs)


class NonRetriableError(KBChatError):
    """Permanent failure such as bad configuration or a rejected caller."""

    def __init__(self, message: str, error_code: str = "NON_RETRIABLE_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, error_code, **kwargs)


# ============================================================================
# Specific Error Types
# ============================================================================


class ConfigurationError(NonRetriableError):
    """Missing or invalid configuration (fatal to one request, not the process)"""

    status_code = 500
    reply = "API-nøkkel mangler på serveren."

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)


class UnauthorizedTenantError(NonRetriableError):
    """Tenant slug is empty after normalization or not in the registry"""

    status_code = 400
    reply = "Unknown client."

    def __init__(self, message: str, slug: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, error_code="UNKNOWN_CLIENT", **kwargs)
        self.slug = slug


class UnauthorizedOriginError(NonRetriableError):
    """Browser origin is not registered for the tenant"""

    status_code = 403
    reply = "Origin not allowed for this client."

    def __init__(self, message: str, origin: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, error_code="ORIGIN_NOT_ALLOWED", **kwargs)
        self.origin = origin


class UpstreamError(RetriableError):
    """Completion provider unreachable or erroring"""

    status_code = 502
    reply = "Beklager – midlertidig problem med AI-svaret."

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        error_code: str = "UPSTREAM_ERROR",
        **kwargs,
    ):
        super().__init__(message, error_code=error_code, **kwargs)
        self.upstream_status = upstream_status


class UpstreamTimeoutError(UpstreamError):
    """Completion request exceeded its timeout and was aborted"""

    def __init__(self, message: str, timeout_seconds: float = 15, **kwargs):
        super().__init__(message, error_code="UPSTREAM_TIMEOUT", **kwargs)
        self.timeout_seconds = timeout_seconds


class MalformedSourceError(KBChatError):
    """Registry or KB file unreadable or unparsable; always degraded to empty"""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="MALFORMED_SOURCE", severity=ErrorSeverity.LOW, **kwargs)
        self.path = path


# ============================================================================
# Error Utilities
# ============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if error should be retried"""
    return isinstance(error, RetriableError)


def format_error_for_logging(error: Exception, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, KBChatError):
        result.update(error.to_dict())

    if error.__cause__:
        result["caused_by"] = {
            "type": type(error.__cause__).__name__,
            "message": str(error.__cause__),
        }

    return result
