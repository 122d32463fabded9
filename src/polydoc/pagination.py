"""Opaque scan cursors: decimal offsets and encoded native backend positions."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ScanPage(Generic[T]):
    """One page of scan results; ``next_cursor`` is None once the scan is exhausted."""

    items: list[T] = field(default_factory=list)
    next_cursor: str | None = None
    total_count: int | None = None


def decode_offset_cursor(cursor: str | None) -> int:
    """Parse an offset cursor; missing or invalid cursors restart from 0."""
    if cursor is None or cursor == "":
        return 0
    try:
        offset = int(cursor)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid pagination cursor {cursor!r}; restarting scan")
        return 0
    if offset < 0:
        logger.warning(f"Ignoring negative pagination cursor {cursor!r}; restarting scan")
        return 0
    return offset


def encode_offset_cursor(offset: int) -> str:
    return str(offset)


def paginate_offset(items: Sequence[T], cursor: str | None, page_size: int) -> ScanPage[T]:
    """Slice a deterministically ordered list into one page with an offset cursor."""
    skip = decode_offset_cursor(cursor)
    total = len(items)
    page = list(items[skip : skip + page_size])
    next_offset = skip + page_size
    next_cursor = encode_offset_cursor(next_offset) if next_offset < total else None
    return ScanPage(items=page, next_cursor=next_cursor, total_count=total)


def encode_native_cursor(position: dict[str, Any] | None) -> str | None:
    """Wrap a backend-native resume position (e.g. LastEvaluatedKey) as URL-safe text."""
    if not position:
        return None
    raw = json.dumps(position, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_native_cursor(cursor: str | None) -> dict[str, Any] | None:
    """Inverse of encode_native_cursor; invalid cursors restart the scan (None)."""
    if not cursor:
        return None
    try:
        obj = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        logger.warning("Ignoring invalid native pagination cursor; restarting scan")
        return None
    if not isinstance(obj, dict):
        logger.warning("Ignoring invalid native pagination cursor; restarting scan")
        return None
    return obj
