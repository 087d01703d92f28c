"""
Custom exceptions for the QuantForge data layer.
Type-safe error handling that keeps transient failures distinguishable from caller mistakes.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categorization for better handling and monitoring."""
    AVAILABILITY = "availability"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    DATABASE = "database"
    EXTERNAL_SERVICE = "external_service"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


TEMPORARILY_UNAVAILABLE_MESSAGE = "The service is temporarily unavailable. Please retry shortly."


class QuantForgeError(Exception):
    """Base exception for all data layer errors with enhanced context."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        user_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.error_code = error_code or self._generate_error_code()
        self.severity = severity
        self.category = category
        self.user_message = user_message or message
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def _generate_error_code(self) -> str:
        """Generate a unique error code for tracking."""
        return f"{self.__class__.__name__.upper()}_{int(self.timestamp.timestamp() * 1000)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__,
        }


# ============================================================================
# AVAILABILITY EXCEPTIONS
# ============================================================================

class PoolExhaustedError(QuantForgeError):
    """All connections of a role stayed busy past the acquire timeout."""

    def __init__(self, role: str, timeout_ms: float, max_connections: int, **kwargs):
        kwargs.setdefault("category", ErrorCategory.AVAILABILITY)
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("user_message", TEMPORARILY_UNAVAILABLE_MESSAGE)
        super().__init__(
            f"No {role} connection available within {timeout_ms:.0f}ms "
            f"(max_connections={max_connections})",
            details={"role": role, "timeout_ms": timeout_ms, "max_connections": max_connections},
            **kwargs
        )
        self.role = role
        self.timeout_ms = timeout_ms


class PoolClosedError(QuantForgeError):
    """The pool was shut down while a caller was acquiring."""

    def __init__(self, message: str = "Connection pool is shut down", **kwargs):
        kwargs.setdefault("category", ErrorCategory.AVAILABILITY)
        kwargs.setdefault("user_message", TEMPORARILY_UNAVAILABLE_MESSAGE)
        super().__init__(message, **kwargs)


# ============================================================================
# BACKEND EXCEPTIONS
# ============================================================================

class TransportError(QuantForgeError):
    """Network or upstream failure talking to the backend. Retried locally."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL_SERVICE)
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("user_message", TEMPORARILY_UNAVAILABLE_MESSAGE)
        details = kwargs.pop("details", None) or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code


class QueryTimeoutError(TransportError):
    """Outbound call exceeded the configured query timeout."""

    def __init__(self, operation: str, timeout_ms: float, **kwargs):
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_ms:.0f}ms",
            details={"operation": operation, "timeout_ms": timeout_ms},
            **kwargs
        )
        self.operation = operation
        self.timeout_ms = timeout_ms


class CircuitOpenError(TransportError):
    """Backend calls are failing fast while the circuit breaker is open."""

    retryable = False

    def __init__(self, retry_after_ms: float, **kwargs):
        super().__init__(
            f"Circuit breaker open, backend calls suspended for {retry_after_ms:.0f}ms",
            details={"retry_after_ms": retry_after_ms},
            **kwargs
        )
        self.retry_after_ms = retry_after_ms


class BackendError(QuantForgeError):
    """Non-retryable error response from the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.DATABASE)
        kwargs.setdefault("user_message", "The request could not be completed.")
        details = kwargs.pop("details", None) or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code


class BackendAuthError(BackendError):
    """Backend rejected the credentials (401/403)."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.AUTHORIZATION)
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("user_message", "Access denied.")
        super().__init__(message, status_code=status_code, **kwargs)


# ============================================================================
# CALLER EXCEPTIONS
# ============================================================================

class QueryValidationError(QuantForgeError):
    """Malformed query specification. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)
        self.field = field


class NotFoundError(QuantForgeError):
    """Resource not found."""

    def __init__(self, resource_type: str, resource_id: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("user_message", f"{resource_type.capitalize()} not found.")
        super().__init__(
            f"{resource_type} {resource_id} not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
            **kwargs
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConfigurationError(QuantForgeError):
    """Invalid configuration detected at startup."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


def is_temporarily_unavailable(error: BaseException) -> bool:
    """True for errors the UI should present as 'temporarily unavailable, retry'."""
    return isinstance(error, (PoolExhaustedError, PoolClosedError, TransportError))
