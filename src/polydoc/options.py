"""Post-processing applied to every document returned to a caller."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_ROUND_TOLERANCE = 1e-10


@dataclass(frozen=True)
class DbOptions:
    auto_sort_arrays: bool = False
    auto_convert_roundable_float_to_int: bool = False

    @property
    def is_noop(self) -> bool:
        return not (self.auto_sort_arrays or self.auto_convert_roundable_float_to_int)


def _sort_key(value: Any) -> tuple[Any, ...]:
    if value is None:
        return (0,)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return (2, math.inf, 1)
        return (2, value, 0)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, list):
        return (4, len(value), json.dumps(value, sort_keys=True, default=str))
    if isinstance(value, dict):
        return (5, len(value), json.dumps(value, sort_keys=True, default=str))
    return (6, str(value))


def _sorted_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted_value(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        items = [_sorted_value(v) for v in value]
        items.sort(key=_sort_key)
        return items
    return value


def _rounded_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _rounded_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_rounded_value(v) for v in value]
    if isinstance(value, float) and math.isfinite(value):
        if abs(value - round(value)) <= _ROUND_TOLERANCE:
            return max(_INT64_MIN, min(_INT64_MAX, int(round(value))))
    return value


def apply_options(document: dict[str, Any] | None, options: DbOptions) -> dict[str, Any] | None:
    """Return a transformed copy: arrays sorted first, then roundable floats converted."""
    if document is None:
        return None
    result: Any = document
    if options.auto_sort_arrays:
        result = _sorted_value(result)
    if options.auto_convert_roundable_float_to_int:
        result = _rounded_value(result)
    if result is document:
        result = dict(document)
    return result
