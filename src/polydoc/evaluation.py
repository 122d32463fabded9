"""Client-side evaluation of condition trees against in-memory documents."""

from __future__ import annotations

import math
from typing import Any

from polydoc.filters import (
    MISSING,
    ArrayElementCondition,
    Condition,
    EmptyCondition,
    ExistenceCondition,
    LogicalCondition,
    ValueCondition,
    resolve_nested_path,
)
from polydoc.primitive import DOUBLE_EPSILON, Primitive, PrimitiveKind


def compare_primitives(left: Primitive, right: Primitive) -> int | None:
    """Three-way compare; None when the values are unordered (NaN involved)."""
    if left.is_numeric and right.is_numeric:
        if left.kind is PrimitiveKind.INTEGER and right.kind is PrimitiveKind.INTEGER:
            a_int, b_int = left.value, right.value
            return (a_int > b_int) - (a_int < b_int)
        a, b = float(left.value), float(right.value)
        if math.isnan(a) or math.isnan(b):
            return None
        if abs(a - b) <= DOUBLE_EPSILON:
            return 0
        return -1 if a < b else 1
    if left.kind is right.kind and left.kind is not PrimitiveKind.DOUBLE:
        # str, bytes and bool all order naturally: code point, bytewise, False < True.
        x, y = left.value, right.value
        return (x > y) - (x < y)
    x_s, y_s = left.canonical_string(), right.canonical_string()
    return (x_s > y_s) - (x_s < y_s)


def primitives_equal(left: Primitive, right: Primitive) -> bool:
    return compare_primitives(left, right) == 0


def _apply_operator(op: str, cmp: int | None) -> bool:
    if cmp is None:
        return op == "!="
    if op == "==":
        return cmp == 0
    if op == "!=":
        return cmp != 0
    if op == ">":
        return cmp > 0
    if op == ">=":
        return cmp >= 0
    if op == "<":
        return cmp < 0
    if op == "<=":
        return cmp <= 0
    raise ValueError(f"Unknown comparison operator: {op}")


def element_matches(value: Any, element: Primitive) -> bool:
    """Array element match: kind-aware equality or identical canonical strings."""
    found = Primitive.from_document_value(value)
    if primitives_equal(found, element):
        return True
    return found.canonical_string() == element.canonical_string()


def _evaluate_value(document: dict[str, Any], cond: ValueCondition) -> bool:
    found = resolve_nested_path(document, cond.segments)
    if found is MISSING:
        return False
    if cond.is_size:
        if not isinstance(found, list):
            return False
        return _apply_operator(
            cond.op, compare_primitives(Primitive.integer(len(found)), cond.operand)
        )
    return _apply_operator(
        cond.op, compare_primitives(Primitive.from_document_value(found), cond.operand)
    )


def _evaluate_array_element(document: dict[str, Any], cond: ArrayElementCondition) -> bool:
    found = resolve_nested_path(document, cond.segments)
    if not isinstance(found, list):
        return not cond.exists
    present = any(element_matches(item, cond.element) for item in found)
    return present if cond.exists else not present


def evaluate(document: dict[str, Any] | None, condition: Condition | None) -> bool:
    """Evaluate a condition tree against a document; None or empty conditions are true."""
    if condition is None or isinstance(condition, EmptyCondition):
        return True
    doc = document if document is not None else {}
    if isinstance(condition, ExistenceCondition):
        present = resolve_nested_path(doc, condition.segments) is not MISSING
        return present if condition.exists else not present
    if isinstance(condition, ValueCondition):
        return _evaluate_value(doc, condition)
    if isinstance(condition, ArrayElementCondition):
        return _evaluate_array_element(doc, condition)
    if isinstance(condition, LogicalCondition):
        results = [evaluate(doc, child) for child in condition.children]
        return all(results) if condition.op == "AND" else any(results)
    raise ValueError(f"Unknown condition type: {type(condition)}")
