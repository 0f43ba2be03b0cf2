"""
Core Exceptions
================

Error taxonomy of the SLA engine.

The API layer maps each family to a status code: missing resources to
404, validation to 422, configuration and domain conflicts to 409 and
failures of the ticket service or webhook to 502. Background work
(sweep, event consumer, lifecycle hooks) logs them instead.
"""

from typing import List, Optional


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


class ConfigurationError(ApplicationException):
    """
    SLA configuration cannot serve the request.

    Raised when no active rule exists, a referenced schedule is missing,
    or a calendar never reaches working time within the walk bound.
    """


class MatchingExhaustedError(ConfigurationError):
    """Rule matching finished without selecting any rule."""


class NotTrackedError(ResourceNotFoundException):
    """Ticket has no SLA tracking record."""

    def __init__(self, ticket_id: str, details: Optional[dict] = None):
        self.ticket_id = ticket_id
        super().__init__("SLA tracking for ticket", ticket_id, details)


class PauseNotAllowedError(DomainException):
    """The ticket's SLA rule does not allow the clock to be paused."""

    def __init__(self, ticket_id: str, rule_name: str):
        self.ticket_id = ticket_id
        super().__init__(
            f"SLA rule '{rule_name}' does not allow pause/resume",
            {"ticket_id": ticket_id, "rule_name": rule_name}
        )


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


class NotificationDeliveryError(ExternalServiceException):
    """One or more escalation recipients could not be reached."""

    def __init__(
        self,
        notification_id: str,
        failed_recipients: List[str],
        delivery_status: str,
    ):
        self.notification_id = notification_id
        self.failed_recipients = failed_recipients
        self.delivery_status = delivery_status
        super().__init__(
            "Notification Dispatch",
            f"notification {notification_id} {delivery_status}",
            {"failed_recipients": failed_recipients}
        )
