"""Keys, return behaviours and write modes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from polydoc.errors import ValidationError
from polydoc.primitive import Primitive

Document = dict[str, Any]


@dataclass(frozen=True)
class DbKey:
    """Identifies one document within one table: (attribute name, Primitive value)."""

    name: str
    value: Primitive

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Key name must not be empty or whitespace")
        if self.name != self.name.strip():
            raise ValidationError(
                f"Key name '{self.name}' must not have leading or trailing whitespace"
            )
        if not isinstance(self.value, Primitive):
            object.__setattr__(self, "value", Primitive.of(self.value))

    def __str__(self) -> str:
        return f"{self.name}={self.value.canonical_string()}"


class ReturnBehavior(str, Enum):
    DO_NOT_RETURN = "do_not_return"
    RETURN_OLD_VALUES = "return_old_values"
    RETURN_NEW_VALUES = "return_new_values"


class WriteMode(str, Enum):
    """Physical write precondition enforced by the backend."""

    UPSERT = "upsert"
    CREATE = "create"  # fail if the item exists
    REPLACE = "replace"  # fail if the item is missing
