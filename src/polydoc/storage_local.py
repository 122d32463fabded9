"""Local file engine: tables are directories, items are JSON files."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Sequence

from polydoc.errors import NotInitializedError, ValidationError, WriteConflictError
from polydoc.evaluation import evaluate
from polydoc.filters import Condition
from polydoc.pagination import ScanPage, paginate_offset
from polydoc.primitive import parse_canonical
from polydoc.types import DbKey, Document, WriteMode

logger = logging.getLogger(__name__)

ENGINE_DIR = "polydoc.local"
FILE_SUFFIX = ".json"

_ILLEGAL_CHARS = frozenset('<>:"/\\|?*%')


def _escape(text: str, extra: str = "") -> str:
    out: list[str] = []
    for ch in text:
        if ch in _ILLEGAL_CHARS or ch in extra or ord(ch) < 32 or ord(ch) == 127:
            out.append("".join(f"%{b:02X}" for b in ch.encode("utf-8")))
        else:
            out.append(ch)
    escaped = "".join(out)
    if escaped in (".", ".."):
        escaped = escaped.replace(".", "%2E")
    return escaped


def _unescape(text: str) -> str:
    raw = text.encode("utf-8")
    data = bytearray()
    i = 0
    while i < len(raw):
        if raw[i] == ord("%") and i + 2 < len(raw):
            try:
                data.append(int(raw[i + 1 : i + 3].decode("ascii"), 16))
                i += 3
                continue
            except ValueError:
                pass
        data.append(raw[i])
        i += 1
    return data.decode("utf-8", errors="replace")


def sanitize_table_name(table: str) -> str:
    return _escape(table)


def item_file_name(key: DbKey) -> str:
    """``<keyName>_<canonicalValue>.json``; '_' in the key name is escaped."""
    return f"{_escape(key.name, extra='_')}_{_escape(key.value.canonical_string())}{FILE_SUFFIX}"


def key_from_file_name(file_name: str) -> DbKey | None:
    """Recover the key from an item file name, or None if it does not follow the layout."""
    if not file_name.endswith(FILE_SUFFIX):
        return None
    stem = file_name[: -len(FILE_SUFFIX)]
    name_part, sep, value_part = stem.partition("_")
    if not sep:
        return None
    try:
        name = _unescape(name_part)
        value = _unescape(value_part)
        return DbKey(name, parse_canonical(value))
    except (ValueError, ValidationError):
        return None


def _read_document(path: Path) -> Document | None:
    """Read one item file; missing, empty or unparsable files count as absent."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Treating unreadable item file {path} as missing: {e}")
        return None
    if not text.strip():
        return None
    try:
        obj = json.loads(text)
    except ValueError:
        logger.warning(f"Treating corrupt item file {path} as missing")
        return None
    if not isinstance(obj, dict):
        logger.warning(f"Treating non-object item file {path} as missing")
        return None
    return obj


def _write_document_atomic(path: Path, document: Document) -> None:
    """Write indented JSON through a same-directory temp file, fsync, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".part", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2, ensure_ascii=False)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _prune_empty_dirs(start: Path, boundary: Path) -> None:
    """Remove empty directories from ``start`` upward, stopping before ``boundary``."""
    current = start
    while current != boundary and boundary in current.parents:
        try:
            current.rmdir()
        except OSError:
            # Not empty (or already gone while another writer races us).
            return
        current = current.parent


def _with_key(document: Document, key: DbKey) -> Document:
    out: Document = {key.name: key.value.to_json()}
    for name, value in document.items():
        if name != key.name:
            out[name] = value
    return out


class LocalFileBackend:
    """File-per-item storage rooted at ``<root>/polydoc.local/<database>``.

    The engine does not lock; callers serialize read-modify-write sequences on a
    table with an external mutex (see DatabaseService).
    """

    name = "file"

    def __init__(
        self,
        *,
        root: str | os.PathLike[str] | None = None,
        database_name: str = "default",
    ) -> None:
        base = Path(root) if root is not None else Path(tempfile.gettempdir()) / "polydoc"
        self.root = base
        self.database_name = database_name
        self.database_dir = base / ENGINE_DIR / _escape(database_name)
        try:
            self.database_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise NotInitializedError(self.name, f"cannot create {self.database_dir}: {e}") from e
        self._initialized = True

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # --- Path helpers ---

    def _table_dir(self, table: str) -> Path:
        return self.database_dir / sanitize_table_name(table)

    def _item_path(self, table: str, key: DbKey) -> Path:
        return self._table_dir(table) / item_file_name(key)

    # --- Sync implementations (run in worker threads) ---

    def _get_sync(self, table: str, key: DbKey) -> Document | None:
        body = _read_document(self._item_path(table, key))
        if body is None:
            return None
        return _with_key(body, key)

    def _write_sync(self, table: str, key: DbKey, document: Document, mode: WriteMode) -> None:
        path = self._item_path(table, key)
        if mode is not WriteMode.UPSERT:
            present = _read_document(path) is not None
            if mode is WriteMode.CREATE and present:
                raise WriteConflictError(f"Item {key} was created concurrently in '{table}'")
            if mode is WriteMode.REPLACE and not present:
                raise WriteConflictError(f"Item {key} was deleted concurrently in '{table}'")
        body = {k: v for k, v in document.items() if k != key.name}
        _write_document_atomic(path, body)

    def _delete_sync(self, table: str, key: DbKey) -> bool:
        path = self._item_path(table, key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        _prune_empty_dirs(path.parent, self.database_dir)
        return True

    def _scan_sync(self, table: str) -> list[Document]:
        table_dir = self._table_dir(table)
        if not table_dir.is_dir():
            return []
        items: list[Document] = []
        for path in sorted(table_dir.glob(f"*{FILE_SUFFIX}"), key=lambda p: p.name):
            key = key_from_file_name(path.name)
            if key is None:
                logger.warning(f"Skipping item file with unrecognized name {path}")
                continue
            body = _read_document(path)
            if body is None:
                continue
            items.append(_with_key(body, key))
        return items

    def _list_tables_sync(self) -> list[str]:
        if not self.database_dir.is_dir():
            return []
        return sorted(_unescape(p.name) for p in self.database_dir.iterdir() if p.is_dir())

    def _drop_table_sync(self, table: str) -> bool:
        table_dir = self._table_dir(table)
        if not table_dir.exists():
            return False
        shutil.rmtree(table_dir)
        return True

    # --- Adapter contract ---

    async def exists(self, table: str, key: DbKey) -> bool:
        return await asyncio.to_thread(self._get_sync, table, key) is not None

    async def get(self, table: str, key: DbKey) -> Document | None:
        return await asyncio.to_thread(self._get_sync, table, key)

    async def get_many(self, table: str, keys: Sequence[DbKey]) -> list[Document]:
        found = await asyncio.gather(*(self.get(table, key) for key in keys))
        return [doc for doc in found if doc is not None]

    async def write(
        self,
        table: str,
        key: DbKey,
        document: Document,
        mode: WriteMode = WriteMode.UPSERT,
    ) -> None:
        await asyncio.to_thread(self._write_sync, table, key, document, mode)

    async def delete(self, table: str, key: DbKey) -> bool:
        return await asyncio.to_thread(self._delete_sync, table, key)

    async def scan(
        self,
        table: str,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]:
        items = await asyncio.to_thread(self._scan_sync, table)
        if page_size is None:
            return ScanPage(items=items, next_cursor=None, total_count=len(items))
        return paginate_offset(items, cursor, page_size)

    async def scan_filtered(
        self,
        table: str,
        condition: Condition,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]:
        items = await asyncio.to_thread(self._scan_sync, table)
        matched = [doc for doc in items if evaluate(doc, condition)]
        if page_size is None:
            return ScanPage(items=matched, next_cursor=None, total_count=len(matched))
        return paginate_offset(matched, cursor, page_size)

    async def list_tables(self) -> list[str]:
        return await asyncio.to_thread(self._list_tables_sync)

    async def drop_table(self, table: str) -> bool:
        return await asyncio.to_thread(self._drop_table_sync, table)

    def is_retriable(self, exc: BaseException) -> bool:
        return isinstance(exc, WriteConflictError)

    def close(self) -> None:
        self._initialized = False

    def storage_info(self) -> dict[str, Any]:
        return {"backend": self.name, "path": str(self.database_dir)}
