"""MongoDB backend adapter."""

from __future__ import annotations

import asyncio
import base64
import logging
import threading
from typing import Any, Sequence

from pymongo import MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
)

from polydoc.config import PolydocConfig
from polydoc.errors import NotInitializedError, WriteConflictError
from polydoc.evaluation import evaluate
from polydoc.filters import MISSING, Condition, resolve_nested_path
from polydoc.pagination import ScanPage, decode_offset_cursor, paginate_offset
from polydoc.types import DbKey, Document, WriteMode

logger = logging.getLogger(__name__)

# WriteConflict, PrimarySteppedDown, NotWritablePrimary, shutdown/step-down interruptions.
RETRIABLE_ERROR_CODES = frozenset({112, 189, 10107, 91, 11600, 11602, 13436})
# $inc on a non-numeric value or through a non-object path.
_INCREMENT_FALLBACK_CODES = frozenset({14, 28})


def _document_id(key: DbKey) -> str:
    return f"{key.name}_{key.value.canonical_string()}"


def _from_mongo(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _from_mongo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_mongo(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _to_document(raw: dict[str, Any]) -> Document:
    return {k: _from_mongo(v) for k, v in raw.items() if k != "_id"}


class MongoBackend:
    """One collection per table; ``_id`` is ``<keyName>_<canonicalKeyValue>``."""

    name = "mongodb"

    def __init__(
        self,
        *,
        uri: str | None = None,
        database_name: str = "default",
        config: PolydocConfig | None = None,
        client: Any | None = None,
    ) -> None:
        cfg = config or PolydocConfig()
        if client is None:
            try:
                client = MongoClient(
                    uri,
                    serverSelectionTimeoutMS=cfg.mongo_server_selection_timeout_ms,
                )
                client.admin.command("ping")
            except (PyMongoError, ValueError) as e:
                raise NotInitializedError(self.name, str(e)) from e
            logger.info(f"Connected to MongoDB database: {database_name}")
        self._client = client
        self._db = client[database_name]
        self.database_name = database_name
        self._collections: dict[str, Collection] = {}
        self._collections_lock = threading.Lock()
        self._initialized = True

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _collection(self, table: str) -> Collection:
        with self._collections_lock:
            coll = self._collections.get(table)
            if coll is None:
                coll = self._db[table]
                self._collections[table] = coll
            return coll

    # --- Sync implementations (run in worker threads) ---

    def _get_sync(self, table: str, key: DbKey) -> Document | None:
        raw = self._collection(table).find_one({"_id": _document_id(key)})
        return None if raw is None else _to_document(raw)

    def _get_many_sync(self, table: str, keys: Sequence[DbKey]) -> list[Document]:
        ids = list(dict.fromkeys(_document_id(k) for k in keys))
        by_id = {raw["_id"]: raw for raw in self._collection(table).find({"_id": {"$in": ids}})}
        return [_to_document(by_id[i]) for i in ids if i in by_id]

    def _write_sync(self, table: str, key: DbKey, document: Document, mode: WriteMode) -> None:
        doc_id = _document_id(key)
        doc: dict[str, Any] = {"_id": doc_id, key.name: key.value.to_json()}
        doc.update({k: v for k, v in document.items() if k not in (key.name, "_id")})
        coll = self._collection(table)
        if mode is WriteMode.CREATE:
            try:
                coll.insert_one(doc)
            except DuplicateKeyError as e:
                raise WriteConflictError(f"Item {key} was created concurrently in '{table}'") from e
            return
        if mode is WriteMode.REPLACE:
            result = coll.replace_one({"_id": doc_id}, doc)
            if result.matched_count == 0:
                raise WriteConflictError(f"Item {key} was deleted concurrently in '{table}'")
            return
        coll.replace_one({"_id": doc_id}, doc, upsert=True)

    def _delete_sync(self, table: str, key: DbKey) -> bool:
        result = self._collection(table).delete_one({"_id": _document_id(key)})
        return result.deleted_count > 0

    def _scan_sync(
        self, table: str, cursor: str | None, page_size: int | None
    ) -> ScanPage[Document]:
        coll = self._collection(table)
        if page_size is None:
            docs = [_to_document(raw) for raw in coll.find({}).sort("_id", 1)]
            return ScanPage(items=docs, next_cursor=None, total_count=len(docs))
        skip = decode_offset_cursor(cursor)
        total = coll.count_documents({})
        docs = [
            _to_document(raw) for raw in coll.find({}).sort("_id", 1).skip(skip).limit(page_size)
        ]
        next_offset = skip + page_size
        next_cursor = str(next_offset) if next_offset < total else None
        return ScanPage(items=docs, next_cursor=next_cursor, total_count=total)

    def _scan_filtered_sync(
        self,
        table: str,
        condition: Condition,
        cursor: str | None,
        page_size: int | None,
    ) -> ScanPage[Document]:
        coll = self._collection(table)
        matched = [
            doc
            for doc in (_to_document(raw) for raw in coll.find({}).sort("_id", 1))
            if evaluate(doc, condition)
        ]
        if page_size is None:
            return ScanPage(items=matched, next_cursor=None, total_count=len(matched))
        return paginate_offset(matched, cursor, page_size)

    def _list_tables_sync(self) -> list[str]:
        return sorted(self._db.list_collection_names())

    def _drop_table_sync(self, table: str) -> bool:
        if table not in self._db.list_collection_names():
            return False
        self._collection(table).drop()
        with self._collections_lock:
            self._collections.pop(table, None)
        return True

    def _increment_sync(
        self,
        table: str,
        key: DbKey,
        segments: tuple[str, ...],
        delta: int | float,
    ) -> tuple[float, bool] | None:
        try:
            before = self._collection(table).find_one_and_update(
                {"_id": _document_id(key)},
                {
                    "$inc": {".".join(segments): delta},
                    "$setOnInsert": {key.name: key.value.to_json()},
                },
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError as e:
            raise WriteConflictError(f"Item {key} was created concurrently in '{table}'") from e
        except OperationFailure as e:
            if e.code in _INCREMENT_FALLBACK_CODES:
                logger.debug(f"Native increment rejected for {key} in '{table}': {e}")
                return None
            raise
        if before is None:
            return float(delta), True
        old = resolve_nested_path(before, segments)
        if old is MISSING or isinstance(old, bool) or not isinstance(old, (int, float)):
            old = 0
        return float(old + delta), False

    # --- Adapter contract ---

    async def exists(self, table: str, key: DbKey) -> bool:
        return await asyncio.to_thread(self._get_sync, table, key) is not None

    async def get(self, table: str, key: DbKey) -> Document | None:
        return await asyncio.to_thread(self._get_sync, table, key)

    async def get_many(self, table: str, keys: Sequence[DbKey]) -> list[Document]:
        if not keys:
            return []
        return await asyncio.to_thread(self._get_many_sync, table, keys)

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
        return await asyncio.to_thread(self._scan_sync, table, cursor, page_size)

    async def scan_filtered(
        self,
        table: str,
        condition: Condition,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]:
        return await asyncio.to_thread(
            self._scan_filtered_sync, table, condition, cursor, page_size
        )

    async def list_tables(self) -> list[str]:
        return await asyncio.to_thread(self._list_tables_sync)

    async def drop_table(self, table: str) -> bool:
        return await asyncio.to_thread(self._drop_table_sync, table)

    async def increment(
        self,
        table: str,
        key: DbKey,
        segments: tuple[str, ...],
        delta: int | float,
    ) -> tuple[float, bool] | None:
        return await asyncio.to_thread(self._increment_sync, table, key, segments, delta)

    def is_retriable(self, exc: BaseException) -> bool:
        if isinstance(exc, (WriteConflictError, AutoReconnect)):
            return True
        if isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError"):
            return True
        return isinstance(exc, OperationFailure) and exc.code in RETRIABLE_ERROR_CODES

    def close(self) -> None:
        self._initialized = False
        self._client.close()

    def storage_info(self) -> dict[str, Any]:
        return {"backend": self.name, "database": self.database_name}
