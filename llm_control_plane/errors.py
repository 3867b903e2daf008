"""Standard error codes and exception classes for the control plane.

Every error carries a stable, machine-readable code and renders to:

```json
{
  "error": {
    "code": "SUBSCRIPTION_REQUIRED",
    "message": "You do not have active subscriptions for the following models: gpt-4o",
    "details": {"field": "model_ids", "value": ["gpt-4o"]},
    "suggestion": "Please ensure you have active subscriptions for all selected models"
  }
}
```
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Stable error codes. Each maps to one HTTP status."""

    # 400 Bad Request
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    KEY_LIMIT_EXCEEDED = "KEY_LIMIT_EXCEEDED"
    INVALID_KEY_STATE = "INVALID_KEY_STATE"

    # 404 Not Found
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    API_KEY_NOT_FOUND = "API_KEY_NOT_FOUND"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # 409 Conflict
    CONFLICT = "CONFLICT"

    # 500 Internal Server Error
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # 502 Bad Gateway
    PROXY_ERROR = "PROXY_ERROR"

    # 503 Service Unavailable
    PROXY_UNAVAILABLE = "PROXY_UNAVAILABLE"


ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.SUBSCRIPTION_REQUIRED: 400,
    ErrorCode.KEY_LIMIT_EXCEEDED: 400,
    ErrorCode.INVALID_KEY_STATE: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.MODEL_NOT_FOUND: 404,
    ErrorCode.API_KEY_NOT_FOUND: 404,
    ErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.PROXY_ERROR: 502,
    ErrorCode.PROXY_UNAVAILABLE: 503,
}

_RESOURCE_CODES: dict[str, ErrorCode] = {
    "Model": ErrorCode.MODEL_NOT_FOUND,
    "API key": ErrorCode.API_KEY_NOT_FOUND,
    "Subscription": ErrorCode.SUBSCRIPTION_NOT_FOUND,
    "User": ErrorCode.USER_NOT_FOUND,
}


class ErrorDetail(BaseModel):
    """Error response body."""

    code: str = Field(..., examples=["MODEL_NOT_FOUND"])
    message: str
    details: Optional[dict[str, Any]] = None
    suggestion: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class ControlPlaneError(Exception):
    """Base exception for all control plane errors."""

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: Optional[dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ):
        self.code = code if isinstance(code, ErrorCode) else ErrorCode(code)
        self.message = message
        self.details = details
        self.suggestion = suggestion
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return ERROR_CODE_TO_HTTP_STATUS.get(self.code, 500)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=ErrorDetail(
                code=self.code.value,
                message=self.message,
                details=self.details,
                suggestion=self.suggestion,
            )
        )


class NotFoundError(ControlPlaneError):
    """Entity absent, or not owned by the caller."""

    def __init__(
        self,
        resource: str,
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.resource = resource
        self.resource_id = resource_id
        default = f"{resource} '{resource_id}' not found" if resource_id else f"{resource} not found"
        super().__init__(
            code=_RESOURCE_CODES.get(resource, ErrorCode.RESOURCE_NOT_FOUND),
            message=message or default,
            details={"resource": resource, "id": resource_id},
        )


class ValidationError(ControlPlaneError):
    """Malformed input or unmet precondition."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        suggestion: Optional[str] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        self.field = field
        self.value = value
        details = {"field": field, "value": value} if field else None
        super().__init__(code=code, message=message, details=details, suggestion=suggestion)


class ConflictError(ControlPlaneError):
    """Uniqueness violation, typically a losing concurrent insert."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(code=ErrorCode.CONFLICT, message=message, details=details)


class InternalError(ControlPlaneError):
    """Unexpected persistence or logic failure."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(code=ErrorCode.INTERNAL_ERROR, message=message, details=details)


class UnavailableError(ControlPlaneError):
    """An upstream dependency cannot be reached."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.PROXY_UNAVAILABLE,
            message=message,
            details=details,
            suggestion="The model proxy is temporarily unavailable; retry later",
        )


class ProxyUnavailableError(UnavailableError):
    """The proxy is unreachable, timed out, answered 5xx, or the circuit is open."""


class ProxyRequestError(ControlPlaneError):
    """The proxy rejected the request with a 4xx status. Never retried."""

    def __init__(self, status_code: int, message: str, endpoint: Optional[str] = None):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(
            code=ErrorCode.PROXY_ERROR,
            message=f"Proxy API error: {status_code} - {message}",
            details={"status_code": status_code, "endpoint": endpoint},
        )

    @property
    def http_status(self) -> int:
        return 404 if self.is_not_found else super().http_status

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404
