"""Tri-state operation outcome returned by every service operation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from polydoc.errors import PolydocError

T = TypeVar("T")


class ResultStatus(str, Enum):
    VALUE = "value"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Success with a value, success with no value, or failure with a reason.

    Expected outcomes such as NotFoundError or PreconditionFailedError travel in
    ``error`` instead of being raised.
    """

    value: T | None = None
    error: PolydocError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> OperationResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: PolydocError) -> OperationResult[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> ResultStatus:
        if self.error is not None:
            return ResultStatus.FAILED
        if self.value is None:
            return ResultStatus.EMPTY
        return ResultStatus.VALUE

    @property
    def data(self) -> T | None:
        if self.error is not None:
            raise self.error
        return self.value

    def unwrap(self) -> T:
        """Return the value, raising the carried error on failure or ValueError when empty."""
        if self.error is not None:
            raise self.error
        if self.value is None:
            raise ValueError("Operation succeeded without a value")
        return self.value
