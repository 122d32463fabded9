"""Polydoc: conditional document writes over DynamoDB, MongoDB and local files."""

__version__ = "0.1.0"

from polydoc.config import PolydocConfig, config_from_env
from polydoc.coordinator import ConditionalWriteCoordinator
from polydoc.errors import (
    AlreadyExistsError,
    ContentionError,
    MutexTimeoutError,
    NotFoundError,
    NotInitializedError,
    PolydocError,
    PreconditionFailedError,
    StorageBackendError,
    TypeMismatchError,
    ValidationError,
    WriteConflictError,
)
from polydoc.filters import (
    Condition,
    all_of,
    any_of,
    array_element_exists,
    array_element_not_exists,
    attr,
    attribute_equals,
    attribute_exists,
    attribute_greater,
    attribute_greater_or_equal,
    attribute_less,
    attribute_less_or_equal,
    attribute_not_equals,
    attribute_not_exists,
    size_of,
)
from polydoc.migration import MigrationResult, migrate_tables
from polydoc.mutex import FileMutexProvider, InProcessMutexProvider
from polydoc.options import DbOptions
from polydoc.pagination import ScanPage
from polydoc.primitive import Primitive, PrimitiveKind
from polydoc.result import OperationResult, ResultStatus
from polydoc.service import DatabaseService
from polydoc.storage import open_backend, open_service
from polydoc.types import DbKey, ReturnBehavior

__all__ = [
    "__version__",
    "PolydocConfig",
    "config_from_env",
    "DatabaseService",
    "ConditionalWriteCoordinator",
    "open_backend",
    "open_service",
    "migrate_tables",
    "MigrationResult",
    "DbKey",
    "Primitive",
    "PrimitiveKind",
    "ReturnBehavior",
    "DbOptions",
    "OperationResult",
    "ResultStatus",
    "ScanPage",
    "InProcessMutexProvider",
    "FileMutexProvider",
    "Condition",
    "attr",
    "all_of",
    "any_of",
    "attribute_exists",
    "attribute_not_exists",
    "attribute_equals",
    "attribute_not_equals",
    "attribute_greater",
    "attribute_greater_or_equal",
    "attribute_less",
    "attribute_less_or_equal",
    "array_element_exists",
    "array_element_not_exists",
    "size_of",
    "PolydocError",
    "NotInitializedError",
    "NotFoundError",
    "AlreadyExistsError",
    "PreconditionFailedError",
    "ValidationError",
    "TypeMismatchError",
    "ContentionError",
    "StorageBackendError",
    "MutexTimeoutError",
    "WriteConflictError",
]
