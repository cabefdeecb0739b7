"""
Custom exceptions for the application.
"""

from typing import Any, Dict, Optional, List
from http import HTTPStatus


class AppException(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Error message
        status_code: HTTP status code
        code: Application error code
        details: Additional error details
        retryable: Whether the caller may retry the same request
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigurationError(AppException):
    """Raised when there's a configuration error."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        config_key: Optional[str] = None
    ):
        if config_key:
            details = details or {}
            details["config_key"] = config_key
        super().__init__(
            message=message,
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            code="CONFIGURATION_ERROR",
            details=details
        )


class ValidationError(AppException):
    """Raised when data validation fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        field_errors: Optional[Dict[str, List[str]]] = None,
        code: str = "VALIDATION_ERROR",
        status_code: int = HTTPStatus.UNPROCESSABLE_ENTITY
    ):
        if field_errors:
            details = details or {}
            details["field_errors"] = field_errors
        super().__init__(
            message=message,
            status_code=status_code,
            code=code,
            details=details
        )


class DuplicateSubscriptionError(ValidationError):
    """Raised when a user already holds a live subscription to a course."""

    def __init__(self, user_id: int, course_id: int):
        super().__init__(
            message="Already subscribed to this course",
            details={"user_id": user_id, "course_id": course_id},
            code="DUPLICATE_SUBSCRIPTION",
            status_code=HTTPStatus.CONFLICT
        )


class NotFoundError(AppException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details.update({"resource_type": resource_type, "resource_id": resource_id})
        super().__init__(
            message=f"{resource_type} not found: {resource_id}",
            status_code=HTTPStatus.NOT_FOUND,
            code="NOT_FOUND",
            details=details
        )


class PaymentMethodNotFoundError(NotFoundError):
    """Raised when a payment method does not exist for the user."""

    def __init__(self, payment_method_id: int, user_id: Optional[int] = None):
        super().__init__(
            resource_type="PaymentMethod",
            resource_id=payment_method_id,
            details={"user_id": user_id} if user_id is not None else None
        )
        self.code = "UNKNOWN_PAYMENT_METHOD"


class InvalidStateError(AppException):
    """Raised when an entity cannot make the requested state transition."""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        if current_state:
            details = details or {}
            details["current_state"] = current_state
        super().__init__(
            message=message,
            status_code=HTTPStatus.CONFLICT,
            code="INVALID_STATE",
            details=details
        )


class GatewayError(AppException):
    """Raised (or carried in a Failure) when a payment provider rejects or fails a call."""

    def __init__(
        self,
        message: str,
        reason_code: str = "gateway_error",
        provider: Optional[str] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["reason_code"] = reason_code
        if provider:
            details["provider"] = provider
        super().__init__(
            message=message,
            status_code=HTTPStatus.BAD_GATEWAY,
            code="GATEWAY_ERROR",
            details=details
        )
        self.reason_code = reason_code
        self.provider = provider
        self.retryable = retryable


class WebhookSignatureError(AppException):
    """Raised when a webhook signature does not match its payload."""

    def __init__(self, message: str = "Invalid webhook signature", event_id: Optional[str] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.UNAUTHORIZED,
            code="INVALID_SIGNATURE",
            details={"event_id": event_id} if event_id else None
        )


class MalformedPayloadError(AppException):
    """Raised when a webhook payload cannot be parsed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.BAD_REQUEST,
            code="MALFORMED_PAYLOAD",
            details=details
        )


class WebhookProcessingError(AppException):
    """Raised when applying a verified webhook event fails; the gateway should redeliver."""

    retryable = True

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            code="WEBHOOK_PROCESSING_FAILED",
            details={"event_id": event_id} if event_id else None
        )


class DatabaseError(AppException):
    """Raised when there's a database error."""

    retryable = True

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None
    ):
        if operation:
            details = details or {}
            details["operation"] = operation
        super().__init__(
            message=message,
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            code="DATABASE_ERROR",
            details=details
        )


class SecurityError(AppException):
    """Raised when there's a security-related error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.UNAUTHORIZED,
            code="SECURITY_ERROR",
            details=details
        )
