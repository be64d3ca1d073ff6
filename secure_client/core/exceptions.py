# secure_client/core/exceptions.py
"""
Core exceptions - standardized error handling for the request pipeline.

Every terminal condition the pipeline surfaces to a caller is one of the
classes below. Each carries a machine-readable ``kind``, a human readable
message and a ``details`` dict with diagnostic metadata. Raw transport
exceptions are never surfaced; they are chained as ``__cause__``.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    TRANSIENT_NETWORK_ERROR = "TRANSIENT_NETWORK_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    SERVICE_ERROR = "SERVICE_ERROR"


class PipelineError(Exception):
    """Base exception for all pipeline errors"""

    kind: ErrorKind = ErrorKind.SERVICE_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        """
        Initialize pipeline base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
            request_id: Correlation id of the failed request, if any
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.request_id = request_id

        if request_id:
            self.details['request_id'] = request_id

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Structured form handed to callers and logs"""
        return {
            "code": self.kind.value,
            "message": self.message,
            "details": dict(self.details),
        }


class RateLimitExceeded(PipelineError):
    """Client-side rate limit hit; the request never left the process"""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    def __init__(
        self,
        message: str,
        endpoint_key: str,
        reset_at: int,
        retry_after: int,
        request_id: Optional[str] = None,
    ):
        """
        Args:
            message: Error description
            endpoint_key: Rate window that rejected the request
            reset_at: Epoch milliseconds at which a slot frees up
            retry_after: Whole seconds until ``reset_at``
            request_id: Correlation id of the rejected request
        """
        super().__init__(message, request_id=request_id)
        self.endpoint_key = endpoint_key
        self.remaining = 0
        self.reset_at = reset_at
        self.retry_after = retry_after

        self.details['endpoint_key'] = endpoint_key
        self.details['remaining'] = 0
        self.details['reset_at'] = reset_at
        self.details['retry_after'] = retry_after

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.kind.value,
            "remaining": 0,
            "resetAt": self.reset_at,
            "retryAfter": self.retry_after,
        }


class AuthExpired(PipelineError):
    """Terminal authentication failure; the session has been logged out"""

    kind = ErrorKind.AUTH_EXPIRED

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details, request_id)
        self.reason = reason

        if reason:
            self.details['reason'] = reason


class TransientNetworkError(PipelineError):
    """Connection failures / 5xx that survived every retry"""

    kind = ErrorKind.TRANSIENT_NETWORK_ERROR

    def __init__(
        self,
        message: str,
        attempts: int,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            message: Error description
            attempts: Number of dispatch attempts made
            status_code: Last HTTP status, None for connection-level failures
            request_id: Correlation id
            details: Additional context
        """
        super().__init__(message, details, request_id)
        self.attempts = attempts
        self.status_code = status_code

        self.details['attempts'] = attempts
        if status_code is not None:
            self.details['status_code'] = status_code


class ClientError(PipelineError):
    """Non-retryable 4xx response (anything but 401 and 429)"""

    kind = ErrorKind.CLIENT_ERROR

    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: Any = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message, request_id=request_id)
        self.status_code = status_code
        self.response_body = response_body

        self.details['status_code'] = status_code
        if response_body is not None:
            self.details['response_body'] = response_body


class ConfigurationError(PipelineError):
    """Errors in static configuration"""

    kind = ErrorKind.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


class ServiceError(PipelineError):
    """Errors in service lifecycle (initialization, shutdown)"""

    kind = ErrorKind.SERVICE_ERROR

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


# Convenience functions for creating common errors

def auth_expired(reason: str, request_id: Optional[str] = None) -> AuthExpired:
    """Create an AuthExpired error with reason context."""
    return AuthExpired("Authentication expired", reason=reason, request_id=request_id)


def config_error(message: str, component: str) -> ConfigurationError:
    """Create a configuration error with component context."""
    return ConfigurationError(message, component=component)


def service_error(message: str, service: str, operation: Optional[str] = None) -> ServiceError:
    """Create a service error with service context."""
    return ServiceError(message, service_name=service, operation=operation)


SAFE_ERROR_MESSAGES = {
    ErrorKind.RATE_LIMIT_EXCEEDED: "Too many requests. Please wait a moment and try again.",
    ErrorKind.AUTH_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorKind.TRANSIENT_NETWORK_ERROR: "Connection problem. Please try again later.",
    ErrorKind.CLIENT_ERROR: "The request could not be processed.",
}

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."


def get_safe_error_message(error: Exception) -> str:
    """Return a message for end users that doesn't expose internal details"""
    if isinstance(error, RateLimitExceeded):
        return f"Too many requests. Please try again in {error.retry_after} seconds."
    if isinstance(error, PipelineError):
        return SAFE_ERROR_MESSAGES.get(error.kind, GENERIC_ERROR_MESSAGE)
    return GENERIC_ERROR_MESSAGE
