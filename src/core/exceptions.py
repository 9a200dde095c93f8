"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Every domain mutation runs in a
single transaction, so raising any of them rolls back the whole action
(including its outbox row).
"""

from typing import Optional, Any


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class InvalidStatusException(ValidationException):
    """Requested status is unknown or no longer active."""

    def __init__(self, status: Any, reason: str = "unknown", details: Optional[dict] = None):
        self.status = status
        self.reason = reason
        super().__init__(
            f"Invalid status '{status}': {reason}",
            details or {"status": status, "reason": reason}
        )


class TATParseException(ValidationException):
    """TAT text could not be turned into a future deadline."""

    def __init__(self, tat_text: Any, details: Optional[dict] = None):
        self.tat_text = tat_text
        super().__init__(
            f"Could not parse TAT '{tat_text}'",
            details or {"tat": tat_text}
        )


class PermissionDeniedException(DomainException):
    """Actor lacks authority for the requested action."""


class ConflictException(DomainException):
    """Optimistic precondition failed; the caller may retry."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DeliveryException(ExternalServiceException):
    """Notification sink unreachable or rejected the message."""

    def __init__(self, channel: str, message: str, details: Optional[dict] = None):
        self.channel = channel
        super().__init__(channel, message, details)
