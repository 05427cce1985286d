"""Exception hierarchy for the data-access layer."""

from __future__ import annotations

from typing import Any, Iterable

__all__ = [
    "DataAccessError",
    "ValidationError",
    "InvalidKeyError",
    "InvalidFilterError",
    "EntityValidationError",
    "NotFoundError",
    "EntityNotFoundError",
    "ConfigurationError",
]


class DataAccessError(Exception):
    """Base class for recoverable data-access errors."""

    error_code: str = "data_access_error"
    default_message: str = "Data access error"

    def __init__(
        self,
        message: str | None = None,
        *,
        detail: Any | None = None,
    ) -> None:
        final_message = message or self.default_message
        super().__init__(final_message)
        self.message = final_message
        self.detail = detail


class ValidationError(DataAccessError, ValueError):
    """Raised when caller-provided arguments are unusable."""

    error_code = "validation_error"
    default_message = "Invalid data"


class InvalidKeyError(ValidationError):
    """Raised when a key does not match the primary key of the mapped entity."""

    error_code = "invalid_key"
    default_message = "Key does not match the entity primary key"


class InvalidFilterError(ValidationError):
    """Raised when a filter object cannot be applied to a query."""

    error_code = "invalid_filter"
    default_message = "Filter cannot be applied"


class EntityValidationError(ValidationError):
    """Raised when one or more entity properties fail validation.

    ``errors`` holds ``(property_name, message)`` pairs so callers can report
    every failing property, not only the first one.
    """

    error_code = "entity_validation_failed"
    default_message = "Entity validation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: Iterable[tuple[str, str]] = (),
        detail: Any | None = None,
    ) -> None:
        self.errors: list[tuple[str, str]] = list(errors)
        super().__init__(message, detail=detail)


class NotFoundError(DataAccessError):
    """Base class for missing resources."""

    error_code = "not_found"
    default_message = "Resource not found"


class EntityNotFoundError(NotFoundError):
    """Raised when an entity looked up by key does not exist."""

    error_code = "entity_not_found"
    default_message = "Entity not found"


class ConfigurationError(DataAccessError):
    """Raised when a repository or migration configuration is incomplete."""

    error_code = "configuration_error"
    default_message = "Data access configuration is invalid"

