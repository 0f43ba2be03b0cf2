"""
Core Module
============

Exception taxonomy shared by every layer of the SLA engine.
"""

from core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationError,
    MatchingExhaustedError,
    NotTrackedError,
    PauseNotAllowedError,
    ExternalServiceException,
    NotificationDeliveryError,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationError",
    "MatchingExhaustedError",
    "NotTrackedError",
    "PauseNotAllowedError",
    "ExternalServiceException",
    "NotificationDeliveryError",
]
