"""Condition tree types and builders for conditional writes and filtered scans."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from polydoc.errors import ValidationError
from polydoc.primitive import Primitive, PrimitiveKind

# --- Path validation helpers ---

MAX_SEGMENT_LENGTH = 255

_SIZE_RE = re.compile(r"^size\((.*)\)$")
_FORBIDDEN_CHARS = frozenset("[]\"'`")

# Marker for "attribute not present", distinct from a stored null.
MISSING: Any = object()


def _validate_segment(segment: str, path: str) -> None:
    if not segment or not segment.strip():
        raise ValidationError(f"Invalid attribute path '{path}': empty path segment")
    if len(segment) > MAX_SEGMENT_LENGTH:
        raise ValidationError(
            f"Invalid attribute path '{path}': segment exceeds {MAX_SEGMENT_LENGTH} characters"
        )
    for ch in segment:
        if ch in _FORBIDDEN_CHARS:
            raise ValidationError(
                f"Invalid attribute path '{path}': character {ch!r} is not allowed; "
                "use array element conditions instead of positional indexing"
            )
        if ord(ch) < 32 or ord(ch) == 127:
            raise ValidationError(f"Invalid attribute path '{path}': control character")


def parse_attribute_path(path: str) -> tuple[str, ...]:
    """Split a dotted attribute path into validated segments."""
    if not isinstance(path, str) or not path.strip():
        raise ValidationError("Attribute path must not be empty")
    if path.startswith(".") or path.endswith("."):
        raise ValidationError(f"Invalid attribute path '{path}': leading or trailing '.'")
    segments = tuple(path.split("."))
    for segment in segments:
        _validate_segment(segment, path)
    return segments


def size_target(attribute: str) -> str | None:
    """Return the wrapped path of ``size(path)``, or None for a plain attribute."""
    match = _SIZE_RE.match(attribute.strip()) if isinstance(attribute, str) else None
    if match is None:
        return None
    return match.group(1).strip()


def resolve_nested_path(data: dict[str, Any], segments: tuple[str, ...]) -> Any:
    """Resolve path segments against nested dicts, returning MISSING when absent."""
    current: Any = data
    for segment in segments:
        if not isinstance(current, dict) or segment not in current:
            return MISSING
        current = current[segment]
    return current


VALUE_OPERATORS = ("==", "!=", ">", ">=", "<", "<=")


class Condition:
    """Base class for condition tree nodes."""

    @property
    def is_empty(self) -> bool:
        return False

    def __and__(self, other: Condition) -> Condition:
        return all_of(self, other)

    def __or__(self, other: Condition) -> Condition:
        return any_of(self, other)


@dataclass(frozen=True)
class EmptyCondition(Condition):
    """No condition; always evaluates to true."""

    @property
    def is_empty(self) -> bool:
        return True


@dataclass(frozen=True)
class ExistenceCondition(Condition):
    attribute: str
    exists: bool = True
    segments: tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if size_target(self.attribute) is not None:
            raise ValidationError("size() is only valid in value comparisons")
        object.__setattr__(self, "segments", parse_attribute_path(self.attribute))


@dataclass(frozen=True)
class ValueCondition(Condition):
    """Compare the value at ``attribute`` (or the length of ``size(attribute)``) to an operand."""

    attribute: str
    op: str  # "==", "!=", ">", ">=", "<", "<="
    operand: Primitive
    segments: tuple[str, ...] = field(init=False, repr=False, compare=False)
    is_size: bool = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.op not in VALUE_OPERATORS:
            raise ValidationError(f"Unknown comparison operator '{self.op}'")
        operand = Primitive.of(self.operand)
        object.__setattr__(self, "operand", operand)
        inner = size_target(self.attribute)
        if inner is not None:
            if operand.kind is not PrimitiveKind.INTEGER:
                raise ValidationError("size() comparisons require an integer operand")
            object.__setattr__(self, "segments", parse_attribute_path(inner))
            object.__setattr__(self, "is_size", True)
        else:
            object.__setattr__(self, "segments", parse_attribute_path(self.attribute))
            object.__setattr__(self, "is_size", False)


@dataclass(frozen=True)
class ArrayElementCondition(Condition):
    attribute: str
    element: Primitive
    exists: bool = True
    segments: tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if size_target(self.attribute) is not None:
            raise ValidationError("size() is only valid in value comparisons")
        object.__setattr__(self, "element", Primitive.of(self.element))
        object.__setattr__(self, "segments", parse_attribute_path(self.attribute))


@dataclass(frozen=True)
class LogicalCondition(Condition):
    op: str  # "AND", "OR"
    children: tuple[Condition, ...] = ()

    def __post_init__(self) -> None:
        if self.op not in ("AND", "OR"):
            raise ValidationError(f"Unknown logical operator '{self.op}'")
        object.__setattr__(self, "children", tuple(self.children))
        if len(self.children) < 2:
            raise ValidationError(f"{self.op} needs at least two conditions")


def _combine(op: str, conditions: tuple[Condition | None, ...]) -> Condition:
    flat: list[Condition] = []
    for cond in conditions:
        if cond is None or cond.is_empty:
            continue
        if isinstance(cond, LogicalCondition) and cond.op == op:
            flat.extend(cond.children)
        else:
            flat.append(cond)
    if not flat:
        return EmptyCondition()
    if len(flat) == 1:
        return flat[0]
    return LogicalCondition(op, tuple(flat))


def all_of(*conditions: Condition | None) -> Condition:
    """AND the given conditions, skipping empty ones."""
    return _combine("AND", conditions)


def any_of(*conditions: Condition | None) -> Condition:
    """OR the given conditions, skipping empty ones."""
    return _combine("OR", conditions)


# --- Builders ---


def attribute_exists(attribute: str) -> ExistenceCondition:
    return ExistenceCondition(attribute, exists=True)


def attribute_not_exists(attribute: str) -> ExistenceCondition:
    return ExistenceCondition(attribute, exists=False)


def attribute_equals(attribute: str, value: Any) -> ValueCondition:
    return ValueCondition(attribute, "==", value)


def attribute_not_equals(attribute: str, value: Any) -> ValueCondition:
    return ValueCondition(attribute, "!=", value)


def attribute_greater(attribute: str, value: Any) -> ValueCondition:
    return ValueCondition(attribute, ">", value)


def attribute_greater_or_equal(attribute: str, value: Any) -> ValueCondition:
    return ValueCondition(attribute, ">=", value)


def attribute_less(attribute: str, value: Any) -> ValueCondition:
    return ValueCondition(attribute, "<", value)


def attribute_less_or_equal(attribute: str, value: Any) -> ValueCondition:
    return ValueCondition(attribute, "<=", value)


def array_element_exists(attribute: str, element: Any) -> ArrayElementCondition:
    return ArrayElementCondition(attribute, element, exists=True)


def array_element_not_exists(attribute: str, element: Any) -> ArrayElementCondition:
    return ArrayElementCondition(attribute, element, exists=False)


def size_of(attribute: str) -> str:
    """Wrap an attribute path as ``size(path)`` for value comparisons."""
    parse_attribute_path(attribute)
    return f"size({attribute})"


class SizeProxy:
    """Proxy that builds size() comparisons: ``attr("tags").size() >= 2``."""

    def __init__(self, path: str) -> None:
        self._attribute = size_of(path)

    def __eq__(self, other: object) -> ValueCondition:  # type: ignore[override]
        return ValueCondition(self._attribute, "==", other)

    def __ne__(self, other: object) -> ValueCondition:  # type: ignore[override]
        return ValueCondition(self._attribute, "!=", other)

    def __gt__(self, other: int) -> ValueCondition:
        return ValueCondition(self._attribute, ">", other)

    def __ge__(self, other: int) -> ValueCondition:
        return ValueCondition(self._attribute, ">=", other)

    def __lt__(self, other: int) -> ValueCondition:
        return ValueCondition(self._attribute, "<", other)

    def __le__(self, other: int) -> ValueCondition:
        return ValueCondition(self._attribute, "<=", other)


class AttributeProxy:
    """Proxy that generates conditions from attribute operations.

    Usage: ``(attr("age") >= 18) & attr("tags").contains("vip")``
    """

    def __init__(self, path: str) -> None:
        parse_attribute_path(path)
        self._path = path

    def __eq__(self, other: object) -> ValueCondition:  # type: ignore[override]
        if other is None:
            raise TypeError("Use .not_exists() instead of == None in conditions.")
        return ValueCondition(self._path, "==", other)

    def __ne__(self, other: object) -> ValueCondition:  # type: ignore[override]
        if other is None:
            raise TypeError("Use .exists() instead of != None in conditions.")
        return ValueCondition(self._path, "!=", other)

    def __gt__(self, other: Any) -> ValueCondition:
        return ValueCondition(self._path, ">", other)

    def __ge__(self, other: Any) -> ValueCondition:
        return ValueCondition(self._path, ">=", other)

    def __lt__(self, other: Any) -> ValueCondition:
        return ValueCondition(self._path, "<", other)

    def __le__(self, other: Any) -> ValueCondition:
        return ValueCondition(self._path, "<=", other)

    def exists(self) -> ExistenceCondition:
        return ExistenceCondition(self._path, exists=True)

    def not_exists(self) -> ExistenceCondition:
        return ExistenceCondition(self._path, exists=False)

    def contains(self, element: Any) -> ArrayElementCondition:
        return ArrayElementCondition(self._path, element, exists=True)

    def not_contains(self, element: Any) -> ArrayElementCondition:
        return ArrayElementCondition(self._path, element, exists=False)

    def size(self) -> SizeProxy:
        return SizeProxy(self._path)

    def __getitem__(self, segment: str) -> AttributeProxy:
        """Navigate into a nested object by one segment."""
        return AttributeProxy(f"{self._path}.{segment}")


def attr(path: str) -> AttributeProxy:
    """Create a proxy for building conditions on the attribute at ``path``."""
    return AttributeProxy(path)
