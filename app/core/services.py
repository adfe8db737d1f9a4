"""
Base service layer patterns for business logic encapsulation.

- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with logging and transaction helpers

Pattern Comparison:
    - ServiceResult: expected failures a caller branches on (lookups, presence)
    - core.exceptions: failures the API layer renders directly (gateway rules)

Usage:
    class ConversationService(BaseService):
        @classmethod
        def get_for_user(cls, conversation_id, user) -> ServiceResult[Conversation]:
            conversation = Conversation.objects.filter(id=conversation_id).first()
            if conversation is None:
                return ServiceResult.failure(
                    "Conversation not found", error_code="CONVERSATION_NOT_FOUND"
                )
            return ServiceResult.success(conversation)

    # In view
    result = ConversationService.get_for_user(pk, request.user)
    if not result.success:
        return Response(result.to_response(), status=404)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """Create a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
        )

    @classmethod
    def from_exception(
        cls, exc: Exception, error_code: str | None = None, error: str | None = None
    ) -> ServiceResult[T]:
        """
        Create a failed result from a caught exception.

        ``error`` replaces the exception text when it should not reach clients.
        """
        return cls(
            success=False,
            error=error or str(exc),
            error_code=error_code or exc.__class__.__name__.upper(),
        )

    def to_response(self) -> dict[str, Any]:
        """
        Convert to API response format.

        Failed results render the same keys as BaseApplicationError.to_dict()
        so clients parse one error shape.
        """
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        return response

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Services are stateless: use @classmethod and keep state in the database
    or Redis.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get a logger named after the service class."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around transaction.atomic() that makes transaction
        boundaries explicit in service code.
        """
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        error_code: str | None = None,
        log_level: int = logging.ERROR,
        error: str | None = None,
    ) -> ServiceResult:
        """
        Log an exception and convert it to a failed ServiceResult.

        Example:
            try:
                redis.hgetall(key)
            except RedisError as e:
                return cls.handle_exception(e, "get presence", "presence_error")
        """
        message = f"{context}: {exc}" if context else str(exc)
        cls.get_logger().log(log_level, message, exc_info=True)
        return ServiceResult.from_exception(exc, error_code, error)
