"""
Base exception classes for application-wide error handling.

Services raise these for domain failures; the DRF exception handler at the
bottom of this module renders them as JSON with a stable error code.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input validation failures (400)
    ├── NotFoundError - Resource not found (404)
    ├── PermissionDeniedError / ForbiddenError - Authorization failures (403)
    │   └── TimeWindowError - Mutation window elapsed (403)
    │       ├── EditTimeoutError
    │       └── DeleteTimeoutError
    └── ConflictError - State conflicts (409)
        └── AlreadyDeletedError

Usage:
    from core.exceptions import NotFoundError, ValidationError

    raise ValidationError("Message must have content or media", error_code="EMPTY_MESSAGE")

    raise NotFoundError(
        "Conversation not found",
        error_code="CONVERSATION_NOT_FOUND",
        details={"conversation_id": str(conversation_id)},
    )

Note:
    DRF handles API-layer exceptions (serialization, authentication, etc.).
    These are for domain/business logic errors raised from the service layer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (field errors, ids, limits)
        status_code: HTTP status used when rendered by the API
    """

    default_error_code: str = "APPLICATION_ERROR"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Message not found",
                "error_code": "MESSAGE_NOT_FOUND",
                "details": {"message_id": "..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails.

    Use for service-layer rules (empty message, content too long, bad media
    descriptor). Serializer-level validation stays with DRF.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Use for single-resource lookups where existence is expected. A message
    deleted concurrently with an edit is also reported this way.
    """

    default_error_code: str = "NOT_FOUND"
    status_code: int = status.HTTP_404_NOT_FOUND


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when user lacks permission for an operation.

    Example:
        if message.sender_id != editor.id:
            raise PermissionDeniedError(
                "Only the sender can edit this message",
                error_code="NOT_SENDER",
            )

    Note:
        For authentication failures (missing/invalid token), use DRF's
        AuthenticationFailed. Use this for authorization failures.
    """

    default_error_code: str = "PERMISSION_DENIED"
    status_code: int = status.HTTP_403_FORBIDDEN


ForbiddenError = PermissionDeniedError


class TimeWindowError(PermissionDeniedError):
    """
    Raised when a time-boxed mutation is attempted after its window closed.

    Subclasses carry distinct error codes so clients can show a specific
    message instead of a generic failure.
    """

    default_error_code: str = "TIME_WINDOW_EXPIRED"


class EditTimeoutError(TimeWindowError):
    """Raised when a message is edited after the edit window."""

    default_error_code: str = "EDIT_TIME_EXPIRED"


class DeleteTimeoutError(TimeWindowError):
    """Raised when a message is deleted for everyone after the delete window."""

    default_error_code: str = "DELETE_TIME_EXPIRED"


class ConflictError(BaseApplicationError):
    """
    Raised when operation conflicts with current resource state.

    Use for duplicates, invalid state transitions and optimistic locking
    failures. HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"
    status_code: int = status.HTTP_409_CONFLICT


class AlreadyDeletedError(ConflictError):
    """Raised when deleting a message that is already deleted for the requester."""

    default_error_code: str = "ALREADY_DELETED"


def api_exception_handler(exc: Exception, context: dict) -> Response | None:
    """
    DRF exception handler that understands BaseApplicationError.

    Configured as REST_FRAMEWORK["EXCEPTION_HANDLER"]. Application errors
    are rendered with their own status code and error payload; everything
    else falls through to DRF's default handler.
    """
    if isinstance(exc, BaseApplicationError):
        view = context.get("view")
        logger.info(
            f"{exc.__class__.__name__} in {view.__class__.__name__ if view else 'unknown view'}: "
            f"{exc.error_code}"
        )
        return Response(exc.to_dict(), status=exc.status_code)
    return exception_handler(exc, context)
