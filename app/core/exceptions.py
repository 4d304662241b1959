"""
Custom Exception Hierarchy

Structured exceptions shared by the API layer, the FSM client and the
processing engines. The retry processor relies on the split between
FSMNotFoundError (terminal) and everything else (retried).
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook / inbox errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    INVALID_PAYLOAD = "ERR_2002"
    DEAD_LETTER_NOT_FOUND = "ERR_2003"
    DEAD_LETTER_INVALID_STATUS = "ERR_2004"

    # Billing errors (3xxx)
    INVOICE_CREATION_PENDING = "ERR_3001"
    INVOICE_INVALID_STATUS = "ERR_3002"

    # Alert errors (4xxx)
    ALERT_NOT_FOUND = "ERR_4001"
    ALERT_INVALID_STATUS = "ERR_4002"

    # External service errors (5xxx)
    FSM_API_ERROR = "ERR_5001"
    FSM_NOT_FOUND = "ERR_5002"
    FSM_MALFORMED_RESPONSE = "ERR_5003"
    FSM_USER_ERROR = "ERR_5004"
    FSM_AUTH_ERROR = "ERR_5005"
    FSM_RATE_LIMITED = "ERR_5006"
    CUSTOM_FIELD_MISSING = "ERR_5007"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5008"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5009"


class AppException(Exception):
    """Base exception for all application errors"""

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


class NotFoundException(AppException):
    """Raised when a requested local record is not found"""

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


class InvalidStatusError(AppException):
    """Raised when an operator action does not fit the record's current status"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        current_status: str,
        action: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR
    ):
        super().__init__(
            message=f"Cannot {action} {resource} {identifier} in status '{current_status}'",
            error_code=error_code,
            status_code=400,
            details={
                "resource": resource,
                "identifier": str(identifier),
                "current_status": current_status,
                "action": action,
            }
        )


class InvoiceCreationPendingError(AppException):
    """Invoice row left pending after a failed create; the outer retry re-attempts it"""

    def __init__(self, job_id: str, invoice_type: str, reason: str):
        super().__init__(
            message=f"Invoice creation failed for job {job_id} ({invoice_type}): {reason}",
            error_code=ErrorCode.INVOICE_CREATION_PENDING,
            status_code=503,
            details={"job_id": job_id, "invoice_type": invoice_type, "reason": reason}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class FSMAPIError(ExternalServiceException):
    """Raised when the FSM GraphQL API fails (transport, 5xx, GraphQL errors)"""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.FSM_API_ERROR
    ):
        super().__init__(
            service_name="fsm",
            message=f"FSM API error: {message}",
            error_code=error_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "FSMAPIError":
        """
        Build an FSMAPIError from an HTTP response.

        Args:
            operation: GraphQL operation name (e.g. GetQuote, JobEdit)
            response: response object (e.g. httpx.Response)
            message: custom message; built from the status code if omitted
            max_response_chars: cap on the stored response body
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class FSMRateLimitedError(FSMAPIError):
    """Raised when the FSM API keeps answering 429 after the client's own retries"""

    def __init__(self, operation: str, attempts: int, waited_seconds: float):
        super().__init__(
            message=f"{operation} rate limited after {attempts} attempts",
            details={
                "operation": operation,
                "attempts": attempts,
                "waited_seconds": round(waited_seconds, 2),
            },
            error_code=ErrorCode.FSM_RATE_LIMITED,
        )


class FSMNotFoundError(FSMAPIError):
    """The requested object does not exist upstream (deleted or never existed)"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            details={"resource": resource, "identifier": str(identifier)},
            error_code=ErrorCode.FSM_NOT_FOUND,
        )
        self.resource = resource
        self.identifier = str(identifier)


class FSMMalformedResponseError(FSMAPIError):
    """The response did not contain the fields the operation expects"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"{operation} returned a malformed response: {reason}",
            details={"operation": operation, "reason": reason[:500]},
            error_code=ErrorCode.FSM_MALFORMED_RESPONSE,
        )


class FSMUserError(FSMAPIError):
    """A mutation was rejected with userErrors"""

    def __init__(self, operation: str, messages: list[str]):
        super().__init__(
            message=f"{operation} rejected: {'; '.join(messages)}",
            details={"operation": operation, "user_errors": messages},
            error_code=ErrorCode.FSM_USER_ERROR,
        )
        self.messages = messages


class FSMAuthError(FSMAPIError):
    """No usable credentials for the account, or the token refresh was rejected"""

    def __init__(self, account_id: str, reason: str):
        super().__init__(
            message=f"Authentication failed for account {account_id}: {reason}",
            details={"account_id": account_id, "reason": reason},
            error_code=ErrorCode.FSM_AUTH_ERROR,
        )


class CustomFieldMissingError(ExternalServiceException):
    """A required custom field is not configured on the FSM account"""

    def __init__(self, account_id: str, label: str):
        super().__init__(
            service_name="fsm",
            message=f"Custom field '{label}' is not configured for account {account_id}",
            error_code=ErrorCode.CUSTOM_FIELD_MISSING,
            details={"account_id": account_id, "label": label}
        )
        self.label = label


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
