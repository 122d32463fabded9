"""Primitive scalar values shared by keys, condition operands and array elements."""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from enum import Enum
from typing import Any

from polydoc.errors import TypeMismatchError, ValidationError

DOUBLE_EPSILON = 1e-10

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(
    r"^[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)$", re.IGNORECASE
)


class PrimitiveKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    BYTE_ARRAY = "byte_array"


class Primitive:
    """Immutable tagged scalar: exactly one of string, int64, float64, bool or bytes.

    Build instances with ``Primitive.of(value)`` or the kind-specific constructors.
    Reading through the accessor of another kind raises TypeMismatchError.
    """

    __slots__ = ("_kind", "_value")

    def __init__(self, kind: PrimitiveKind, value: Any) -> None:
        object.__setattr__(self, "_kind", kind)
        object.__setattr__(self, "_value", value)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Primitive is immutable")

    def __reduce__(self) -> tuple[Any, ...]:
        return (Primitive, (self._kind, self._value))

    # --- Construction ---

    @classmethod
    def string(cls, value: str) -> Primitive:
        if not isinstance(value, str):
            raise ValidationError(f"Expected str, got {type(value).__name__}")
        return cls(PrimitiveKind.STRING, value)

    @classmethod
    def integer(cls, value: int) -> Primitive:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Expected int, got {type(value).__name__}")
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise ValidationError(f"Integer {value} does not fit in 64 bits")
        return cls(PrimitiveKind.INTEGER, value)

    @classmethod
    def double(cls, value: float) -> Primitive:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Expected float, got {type(value).__name__}")
        return cls(PrimitiveKind.DOUBLE, float(value))

    @classmethod
    def boolean(cls, value: bool) -> Primitive:
        if not isinstance(value, bool):
            raise ValidationError(f"Expected bool, got {type(value).__name__}")
        return cls(PrimitiveKind.BOOLEAN, value)

    @classmethod
    def byte_array(cls, value: bytes | bytearray | memoryview) -> Primitive:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise ValidationError(f"Expected bytes, got {type(value).__name__}")
        return cls(PrimitiveKind.BYTE_ARRAY, bytes(value))

    @classmethod
    def of(cls, value: Any) -> Primitive:
        """Wrap a Python scalar; an existing Primitive is returned unchanged."""
        if isinstance(value, Primitive):
            return value
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, int):
            return cls.integer(value)
        if isinstance(value, float):
            return cls.double(value)
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls.byte_array(value)
        raise ValidationError(f"Unsupported primitive value type: {type(value).__name__}")

    @classmethod
    def from_document_value(cls, value: Any) -> Primitive:
        """Convert a value found in a document; non-scalars become their JSON text."""
        if isinstance(value, (str, bool, float, bytes)):
            return cls.of(value)
        if isinstance(value, int):
            if _INT64_MIN <= value <= _INT64_MAX:
                return cls.integer(value)
            return cls.double(float(value))
        return cls.string(json.dumps(value, separators=(",", ":"), default=str))

    # --- Accessors ---

    @property
    def kind(self) -> PrimitiveKind:
        return self._kind

    @property
    def value(self) -> Any:
        return self._value

    def _expect(self, kind: PrimitiveKind) -> Any:
        if self._kind is not kind:
            raise TypeMismatchError(kind.value, self._kind.value)
        return self._value

    def as_string(self) -> str:
        return self._expect(PrimitiveKind.STRING)

    def as_integer(self) -> int:
        return self._expect(PrimitiveKind.INTEGER)

    def as_double(self) -> float:
        return self._expect(PrimitiveKind.DOUBLE)

    def as_boolean(self) -> bool:
        return self._expect(PrimitiveKind.BOOLEAN)

    def as_bytes(self) -> bytes:
        return self._expect(PrimitiveKind.BYTE_ARRAY)

    @property
    def is_numeric(self) -> bool:
        return self._kind in (PrimitiveKind.INTEGER, PrimitiveKind.DOUBLE)

    # --- Conversion ---

    def canonical_string(self) -> str:
        """Culture-invariant text form used for filenames, sorting and cross-kind compares."""
        kind = self._kind
        if kind is PrimitiveKind.STRING:
            return self._value
        if kind is PrimitiveKind.INTEGER:
            return str(self._value)
        if kind is PrimitiveKind.DOUBLE:
            return repr(self._value)
        if kind is PrimitiveKind.BOOLEAN:
            return "True" if self._value else "False"
        return base64.b64encode(self._value).decode("ascii")

    def to_json(self) -> Any:
        """Value as stored inside a JSON document (bytes as Base64 text)."""
        if self._kind is PrimitiveKind.BYTE_ARRAY:
            return base64.b64encode(self._value).decode("ascii")
        return self._value

    # --- Equality ---

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Primitive):
            return NotImplemented
        if self._kind is not other._kind:
            return False
        if self._kind is PrimitiveKind.DOUBLE:
            a, b = self._value, other._value
            if math.isnan(a) or math.isnan(b):
                return False
            if a == b:
                return True
            return abs(a - b) <= DOUBLE_EPSILON
        return self._value == other._value

    def __hash__(self) -> int:
        # Epsilon equality is not transitive, so doubles hash by kind only.
        if self._kind is PrimitiveKind.DOUBLE:
            return hash(self._kind)
        return hash((self._kind, self._value))

    def __repr__(self) -> str:
        return f"Primitive.{self._kind.name}({self._value!r})"

    def __str__(self) -> str:
        return self.canonical_string()


def parse_canonical(text: str) -> Primitive:
    """Recover a Primitive from its canonical text: integer, double, Base64, then string."""
    if _INTEGER_RE.match(text):
        value = int(text)
        if _INT64_MIN <= value <= _INT64_MAX:
            return Primitive.integer(value)
    if _FLOAT_RE.match(text):
        return Primitive.double(float(text))
    if text and len(text) % 4 == 0:
        try:
            return Primitive.byte_array(base64.b64decode(text, validate=True))
        except (binascii.Error, ValueError):
            pass
    return Primitive.string(text)
