"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from rma_workflow.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    InvalidTransitionException,
    ConflictException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    NotifierException,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "InvalidTransitionException",
    "ConflictException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "NotifierException",
]
