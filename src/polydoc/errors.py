"""Structured error types for polydoc."""

from __future__ import annotations


class PolydocError(Exception):
    """Base error for all polydoc errors."""


class NotInitializedError(PolydocError):
    """Raised when a backend could not be reached or configured at construction."""

    def __init__(self, backend: str, detail: str) -> None:
        self.backend = backend
        self.detail = detail
        super().__init__(f"Backend '{backend}' is not initialized: {detail}")


class NotFoundError(PolydocError):
    """Item or table is absent where presence was required."""

    def __init__(self, table: str, key: str | None = None) -> None:
        self.table = table
        self.key = key
        if key is None:
            super().__init__(f"Table '{table}' does not exist")
        else:
            super().__init__(f"Item {key} does not exist in table '{table}'")


class AlreadyExistsError(PolydocError):
    """Put without overwrite hit an existing item."""

    def __init__(self, table: str, key: str) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Item {key} already exists in table '{table}'")


class PreconditionFailedError(PolydocError):
    """A condition evaluated to false against the current document."""

    def __init__(self, table: str, key: str) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Condition check failed for item {key} in table '{table}'")


class ValidationError(PolydocError):
    """Raised for malformed paths, element batches or attribute names."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class TypeMismatchError(PolydocError):
    """Raised when a Primitive is read through the accessor of another kind."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Primitive holds {actual}, not {expected}")


class ContentionError(PolydocError):
    """Raised when the contention retry budget is exhausted."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Too much contention on storage entities; tried {attempts} times")


class StorageBackendError(PolydocError):
    """Raised when backend storage operations fail."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage backend error during {operation}: {detail}")


class MutexTimeoutError(PolydocError):
    """Raised when a mutex scope cannot be acquired within the timeout."""

    def __init__(self, scope_id: str, entity_id: str, timeout_s: float) -> None:
        self.scope_id = scope_id
        self.entity_id = entity_id
        self.timeout_s = timeout_s
        super().__init__(
            f"Could not acquire mutex {scope_id}/{entity_id} within {timeout_s:g}s timeout"
        )


class WriteConflictError(PolydocError):
    """A conditional physical write lost a race; the operation may be retried."""

    def __init__(self, message: str = "Concurrent write detected; please retry") -> None:
        super().__init__(message)
