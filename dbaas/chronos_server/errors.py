"""
Error types for Chronos Server.

Every public operation either returns a well-formed result or raises exactly
one of these errors:

- ValidationError: payload, filter or argument violates the collection schema
- ConflictError: optimistic-concurrency mismatch on the item's ``ov``
- NotFoundError: unknown item, version, database or tenant key
- ConfigurationError: unresolvable routing or connection settings (fatal at startup)
- StorageError: transient I/O failure from the metadata or object store
- CapacityError: write buffer is full

Invariants:
    - All errors inherit from ChronosError
    - ValidationError and ConflictError are never retried automatically
    - StorageError is the only retryable kind
    - Error details never include credentials
"""

from __future__ import annotations

from typing import Any


class ChronosError(Exception):
    """Base exception for all Chronos errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CHRONOS_ERROR"
        self.details = details or {}


class ValidationError(ChronosError):
    """Payload, filter or argument validation failed.

    Raised when:
    - A required indexed field is missing
    - A filter or sort names a field that is not indexed
    - An argument is out of range
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class ConflictError(ChronosError):
    """The item's current version does not match the expected one."""

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        expected_ov: int | None = None,
        actual_ov: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={
                "item_id": item_id,
                "expected_ov": expected_ov,
                "actual_ov": actual_ov,
            },
        )
        self.item_id = item_id
        self.expected_ov = expected_ov
        self.actual_ov = actual_ov


class NotFoundError(ChronosError):
    """Resource not found.

    Raised when:
    - Item doesn't exist (write paths; reads return None instead)
    - Version has been pruned or was never written
    - Database name or tenant key is not configured
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConfigurationError(ChronosError):
    """Configuration is invalid or cannot be resolved."""

    def __init__(self, message: str, setting: str | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"setting": setting})
        self.setting = setting


class StorageError(ChronosError):
    """Transient failure talking to the metadata store or object store."""

    retryable = True

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="STORAGE_ERROR",
            details={"backend": backend, "operation": operation},
        )
        self.backend = backend
        self.operation = operation


class CapacityError(ChronosError):
    """Write buffer cannot accept more pending writes."""

    def __init__(self, message: str, pending: int, limit: int) -> None:
        super().__init__(
            message,
            code="CAPACITY_ERROR",
            details={"pending": pending, "limit": limit},
        )
        self.pending = pending
        self.limit = limit
