"""
Custom exception classes for the application.
"""

from typing import Any


class AppException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize application exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ValidationError(AppException):
    """Raised for malformed input, before any state is touched.

    Distinct from pydantic's ValidationError.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", details)


class CallNotFoundError(AppException):
    """Raised when a call reference does not resolve to a call."""

    def __init__(self, call_ref: str) -> None:
        self.call_ref = call_ref
        super().__init__(f"Call not found: {call_ref}", "CALL_NOT_FOUND", {"call_ref": call_ref})


class PermissionRequiredError(AppException):
    """Raised when an outbound call is blocked by the consent policy."""

    def __init__(
        self,
        contact_ref: str,
        destination: str,
        can_request: bool = True,
        reason: str = "no placeable permission",
    ) -> None:
        self.contact_ref = contact_ref
        self.destination = destination
        self.can_request = can_request
        super().__init__(
            "Call permission required",
            "PERMISSION_REQUIRED",
            {
                "contact_ref": contact_ref,
                "destination": destination,
                "requires_permission": True,
                "can_request": can_request,
                "reason": reason,
            },
        )


class RateLimitedError(AppException):
    """Raised when too many permission requests were sent for a pair."""

    def __init__(self, window: str, limit: int, retry_after_seconds: int | None = None) -> None:
        self.window = window
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Maximum permission requests per {window} reached",
            "RATE_LIMITED",
            {"window": window, "limit": limit, "retry_after_seconds": retry_after_seconds},
        )


class DuplicateExternalIdError(AppException):
    """Raised when a provider call id is already bound to another call."""

    def __init__(self, external_call_id: str) -> None:
        self.external_call_id = external_call_id
        super().__init__(
            f"External call id already exists: {external_call_id}",
            "DUPLICATE_EXTERNAL_ID",
            {"external_call_id": external_call_id},
        )


class NoPendingRequestError(AppException):
    """Raised when a consent response matches no pending permission."""

    def __init__(self, destination: str) -> None:
        self.destination = destination
        super().__init__(
            f"No pending permission request for {destination}",
            "NO_PENDING_REQUEST",
            {"destination": destination},
        )


class CollaboratorError(AppException):
    """Raised when an external collaborator (telephony, messaging, CRM) fails."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.error_code = error_code
        self.provider_response = provider_response or {}
        super().__init__(message, "COLLABORATOR_ERROR", details)
