"""
Custom exception classes for the harvester.

Structured errors with stable error codes and HTTP status mappings for
the control API. Worker code catches these at the message boundary and
records them in the audit log instead of letting them escape.
"""

from enum import Enum
from typing import Any


class AppException(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for client handling
        status_code: HTTP status code to return
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        error_code: str = "APP_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


class EntityNotFoundException(AppException):
    """Raised when a requested entity is not found."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        message = f"{entity_type} not found"
        if entity_id:
            message = f"{entity_type} '{entity_id}' not found"
        super().__init__(message, "ENTITY_NOT_FOUND", 404, details)


# Validation Exceptions
class ValidationException(AppException):
    """Raised when input validation fails."""

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(message, "VALIDATION_ERROR", 422, {"field_errors": field_errors or {}})


# Queue Exceptions
class QueueUnavailableException(AppException):
    """Raised when the queue cannot accept or hand out messages."""

    def __init__(
        self,
        message: str = "Queue unavailable",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, "QUEUE_UNAVAILABLE", 503, details)


# Crawler Exceptions
class CrawlerException(AppException):
    """Base exception for crawler-related errors."""

    def __init__(
        self,
        message: str = "Crawler operation failed",
        error_code: str = "CRAWLER_ERROR",
        source_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        _details = details or {}
        if source_type:
            _details["source_type"] = source_type
        super().__init__(message, error_code, 500, _details)


class NavigationException(CrawlerException):
    """Raised when a page cannot be loaded or is a block page."""

    def __init__(self, url: str, error_type: Enum, message: str) -> None:
        self.url = url
        self.error_type = error_type
        super().__init__(
            message,
            "CRAWLER_NAVIGATION_ERROR",
            details={"url": url, "error_type": error_type.value},
        )


class SeedTriggerException(AppException):
    """Raised when the remote seed endpoint cannot be reached."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(
            message,
            "SEED_TRIGGER_ERROR",
            503,
            {"url": url},
        )
