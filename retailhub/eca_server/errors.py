"""
Error types for the ECA server.

This module defines the exception taxonomy shared by the engine and the
webhook pipeline:
- EcaError: Base exception carrying a stable code and HTTP status
- Business errors (ValidationError, UnsupportedEventError, NotFoundError,
  PreconditionError, TransitionError): expected outcomes, returned to callers
- Operational errors (ExternalStoreError, RequestTimeoutError): backing store
  or deadline failures, surfaced without internal detail

Invariants:
    - All errors inherit from EcaError
    - code and http_status are stable per class (clients match on code)
    - ExternalStoreError.message never contains store internals

How to change safely:
    - Add new error classes instead of changing existing codes
    - Keep is_business_error() in sync when adding business errors
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class EcaError(Exception):
    """Base exception for all ECA server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        http_status: HTTP status used by the webhook pipeline
    """

    default_code = "ECA_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error object of the response envelope."""
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


class ValidationError(EcaError):
    """Missing or malformed required fields.

    Raised when:
    - The webhook envelope has no action or malformed attributes
    - A required payload field for the action is absent
    - A field value has the wrong type
    """

    default_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if field_name:
            details["field"] = field_name
        if errors:
            details["errors"] = errors
        super().__init__(message, details=details)
        self.field_name = field_name
        self.errors = errors or []


class UnsupportedEventError(EcaError):
    """Action is not part of the flow's declared action set."""

    default_code = "UNSUPPORTED_EVENT"
    http_status = 400

    def __init__(self, flow: str, action: str, supported: Optional[List[str]] = None) -> None:
        super().__init__(
            f"Action '{action}' is not supported by flow '{flow}'",
            details={"flow": flow, "action": action, "supported_actions": supported or []},
        )
        self.flow = flow
        self.action = action


class AuthenticationError(EcaError):
    """Missing or invalid credentials."""

    default_code = "AUTHENTICATION_ERROR"
    http_status = 401


class PermissionDeniedError(EcaError):
    """Credentials are valid but lack the required permission."""

    default_code = "PERMISSION_DENIED"
    http_status = 403

    def __init__(self, message: str, permission: Optional[str] = None) -> None:
        super().__init__(message, details={"required_permission": permission})
        self.permission = permission


class NotFoundError(EcaError):
    """Referenced entity or transaction does not exist."""

    default_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class PreconditionError(EcaError):
    """Referenced transaction exists but is in the wrong status for the action.

    Also raised when an enabled ECA rule's conditions are not met.
    """

    default_code = "PRECONDITION_FAILED"
    http_status = 409


class TransitionError(EcaError):
    """State machine rejected a from -> to transition.

    Raised both for transitions absent from the type's table and for
    conditional updates that found a stale status. Callers must not retry
    blindly.
    """

    default_code = "INVALID_TRANSITION"
    http_status = 422

    def __init__(
        self,
        message: str,
        transaction_type: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "transaction_type": transaction_type,
                "from": from_status,
                "to": to_status,
            },
        )
        self.transaction_type = transaction_type
        self.from_status = from_status
        self.to_status = to_status


class ExternalStoreError(EcaError):
    """Backing store call failed.

    The message is generic. The original exception is chained as
    __cause__ and logged server-side.
    """

    default_code = "STORE_ERROR"
    http_status = 500

    def __init__(self, operation: str, table: Optional[str] = None) -> None:
        super().__init__(
            "Backing store operation failed",
            details={"operation": operation},
        )
        self.operation = operation
        self.table = table


class RequestTimeoutError(EcaError):
    """Processing exceeded the request deadline."""

    default_code = "TIMEOUT"
    http_status = 504

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            f"Request processing exceeded {timeout_seconds}s",
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class InternalError(EcaError):
    """Unexpected failure while processing a request."""

    default_code = "INTERNAL_ERROR"
    http_status = 500


_BUSINESS_ERRORS = (
    ValidationError,
    UnsupportedEventError,
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    PreconditionError,
    TransitionError,
)


def is_business_error(exc: BaseException) -> bool:
    """Whether an exception is an expected business outcome."""
    return isinstance(exc, _BUSINESS_ERRORS)
