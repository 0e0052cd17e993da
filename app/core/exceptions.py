"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Every exception carries a retry class: the Retry Executor consults
``retryable`` to decide whether an attempt may be repeated.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"
    PERSISTENCE_UNAVAILABLE = "ERR_1007"

    # Webhook edge errors (2xxx)
    WEBHOOK_AUTHENTICATION_FAILED = "ERR_2001"
    WEBHOOK_MALFORMED_PAYLOAD = "ERR_2002"
    WEBHOOK_EVENT_NOT_FOUND = "ERR_2003"
    WEBHOOK_EVENT_INVALID_STATE = "ERR_2004"
    DUPLICATE_EVENT = "ERR_2005"

    # Tenant errors (3xxx)
    TENANT_NOT_FOUND = "ERR_3001"
    TENANT_INACTIVE = "ERR_3002"
    CREDENTIALS_UNAVAILABLE = "ERR_3003"

    # Order / delivery errors (4xxx)
    ORDER_NOT_FOUND = "ERR_4001"
    DELIVERY_NOT_FOUND = "ERR_4002"

    # External service errors (5xxx)
    ORDERING_PLATFORM_ERROR = "ERR_5001"
    COURIER_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    EXTERNAL_SERVICE_REJECTED = "ERR_5005"
    EXTERNAL_SERVICE_AUTH_FAILED = "ERR_5006"


class AppException(Exception):
    """Base exception for all application errors"""

    # חריגות שמותר לנסות שוב (רשת / 5xx). ברירת מחדל: terminal
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ─── Webhook edge ────────────────────────────────────────────────────────────

class AuthenticationFailed(AppException):
    """Inbound webhook signature/secret check failed (rejected, never retried)"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_AUTHENTICATION_FAILED,
            status_code=401,
            details=details
        )


class MalformedPayload(AppException):
    """Inbound payload is not usable (bad JSON, missing tenant or order id)"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_MALFORMED_PAYLOAD,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class DuplicateEvent(AppException):
    """
    Not an error: the event was already applied.

    The Retry Executor treats it as a successful, idempotent no-op.
    """

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Duplicate event ignored: {reason}",
            error_code=ErrorCode.DUPLICATE_EVENT,
            status_code=200,
            details=details
        )


class PersistenceUnavailableError(AppException):
    """Raised when an inbound event cannot be durably logged"""

    def __init__(self, message: str = "Event log is unavailable"):
        super().__init__(
            message=message,
            error_code=ErrorCode.PERSISTENCE_UNAVAILABLE,
            status_code=503,
        )


class EventNotFoundError(NotFoundException):
    """Raised when a webhook event id does not exist"""

    def __init__(self, event_id: str):
        super().__init__(
            resource="WebhookEvent",
            identifier=event_id,
            error_code=ErrorCode.WEBHOOK_EVENT_NOT_FOUND
        )


class InvalidEventStateError(AppException):
    """Raised when an event status operation is not allowed from its current status"""

    def __init__(self, event_id: str, current_status: str, required_status: str):
        super().__init__(
            message=f"Event {event_id} has status '{current_status}', required '{required_status}'",
            error_code=ErrorCode.WEBHOOK_EVENT_INVALID_STATE,
            status_code=409,
            details={
                "event_id": event_id,
                "current_status": current_status,
                "required_status": required_status,
            }
        )


# ─── Tenants ─────────────────────────────────────────────────────────────────

class TenantException(AppException):
    """Base exception for tenant-related errors (terminal, needs operator attention)"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        store_id: str,
        status_code: int = 400,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details={"store_id": store_id}
        )
        self.store_id = store_id


class TenantNotFound(TenantException):
    """Raised when no merchant is registered for the store id"""

    def __init__(self, store_id: str):
        super().__init__(
            message=f"Merchant not found for store: {store_id}",
            error_code=ErrorCode.TENANT_NOT_FOUND,
            store_id=store_id,
            status_code=404,
        )


class TenantInactive(TenantException):
    """Raised when the merchant exists but is disabled"""

    def __init__(self, store_id: str):
        super().__init__(
            message=f"Merchant is inactive: {store_id}",
            error_code=ErrorCode.TENANT_INACTIVE,
            store_id=store_id,
            status_code=403,
        )


class CredentialsUnavailable(TenantException):
    """Raised when stored credentials cannot be decrypted"""

    def __init__(self, store_id: str, reason: str):
        super().__init__(
            message=f"Credentials unavailable for store {store_id}: {reason}",
            error_code=ErrorCode.CREDENTIALS_UNAVAILABLE,
            store_id=store_id,
            status_code=500,
        )


# ─── Orders / deliveries ─────────────────────────────────────────────────────

class OrderNotFoundError(NotFoundException):
    """Raised when an order is not found"""

    def __init__(self, identifier: str):
        super().__init__(
            resource="Order",
            identifier=identifier,
            error_code=ErrorCode.ORDER_NOT_FOUND
        )


class DeliveryNotFoundError(NotFoundException):
    """Raised when a delivery is not found"""

    def __init__(self, identifier: str):
        super().__init__(
            resource="Delivery",
            identifier=identifier,
            error_code=ErrorCode.DELIVERY_NOT_FOUND
        )


# ─── External services ───────────────────────────────────────────────────────

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        status_code: int = 503,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name
        self.service_name = service_name

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "ExternalServiceException":
        """
        יצירת חריגה מתוך HTTP response בצורה עקבית.

        Args:
            service_name: שם השירות (ordering_platform / courier)
            operation: שם הפעולה (לדוגמה: create_delivery, get_order)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name,
            message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class TransientUpstreamError(ExternalServiceException):
    """Network error, timeout, 429 or 5xx from an upstream API (retryable)"""

    retryable = True

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            status_code=503,
            details=details
        )


class ServiceTimeoutError(TransientUpstreamError):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            details={"timeout_seconds": timeout_seconds}
        )
        self.error_code = ErrorCode.EXTERNAL_SERVICE_TIMEOUT


class UpstreamRequestError(ExternalServiceException):
    """4xx from an upstream API: the request itself is wrong (terminal)"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.EXTERNAL_SERVICE_REJECTED,
            status_code=502,
            details=details
        )


class UpstreamAuthenticationError(ExternalServiceException):
    """Upstream rejected our credentials even after a refresh (terminal)"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.EXTERNAL_SERVICE_AUTH_FAILED,
            status_code=502,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    retryable = True

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
