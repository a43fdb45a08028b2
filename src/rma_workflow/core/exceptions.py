"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

Case-level failures (validation, invalid transition, version conflict) are
recoverable by the caller. Repository failures are infrastructure errors and
are reported separately. Notifier failures never leave the dispatch layer.
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
    """Case store unavailable or failed; not a case-level error."""


class ValidationException(DomainException):
    """Missing or malformed required field."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        self.field = field
        super().__init__(message, details or ({"field": field} if field else {}))


class InvalidTransitionException(DomainException):
    """Stage change not permitted from the current stage."""

    def __init__(
        self,
        case_id: str,
        current_stage: Any,
        operation: str,
        reason: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.case_id = case_id
        self.current_stage = current_stage
        self.operation = operation
        stage = getattr(current_stage, "value", current_stage)
        message = f"Cannot {operation} case {case_id} in stage '{stage}'"
        if reason:
            message += f": {reason}"
        super().__init__(
            message,
            details or {"case_id": case_id, "stage": stage, "operation": operation}
        )


class ConflictException(DomainException):
    """Supplied version is stale; the caller must re-read and retry."""

    def __init__(
        self,
        case_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
        details: Optional[dict] = None
    ):
        self.case_id = case_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on case {case_id}: expected {expected_version}, "
            f"found {actual_version if actual_version is not None else 'a newer version'}",
            details or {
                "case_id": case_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }
        )


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


class NotifierException(ExternalServiceException):
    """Notification could not be delivered."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notifier", message, details)
