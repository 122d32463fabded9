"""Backend adapter contract, storage URI binding and backend factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable
from urllib.parse import parse_qs, unquote, urlparse

from polydoc.config import PolydocConfig
from polydoc.errors import StorageBackendError
from polydoc.filters import Condition
from polydoc.pagination import ScanPage
from polydoc.types import DbKey, Document, WriteMode

if TYPE_CHECKING:
    from polydoc.hooks import StoreHooks
    from polydoc.mutex import MutexProvider
    from polydoc.service import DatabaseService


@runtime_checkable
class BackendAdapter(Protocol):
    """Primitive read/write/scan contract composed by the write coordinator.

    Documents returned by ``get``, ``get_many`` and the scans carry the key
    attribute. Documents passed to ``write`` do not; the adapter decides how the
    key is persisted. ``write`` raises WriteConflictError when ``mode`` is
    violated (CREATE over an existing item, REPLACE of a missing one).
    """

    name: str

    @property
    def is_initialized(self) -> bool: ...

    async def exists(self, table: str, key: DbKey) -> bool: ...

    async def get(self, table: str, key: DbKey) -> Document | None: ...

    async def get_many(self, table: str, keys: Sequence[DbKey]) -> list[Document]: ...

    async def write(
        self,
        table: str,
        key: DbKey,
        document: Document,
        mode: WriteMode = WriteMode.UPSERT,
    ) -> None: ...

    async def delete(self, table: str, key: DbKey) -> bool: ...

    async def scan(
        self,
        table: str,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]: ...

    async def scan_filtered(
        self,
        table: str,
        condition: Condition,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]: ...

    async def list_tables(self) -> list[str]: ...

    async def drop_table(self, table: str) -> bool: ...

    def is_retriable(self, exc: BaseException) -> bool: ...

    def close(self) -> None: ...


@runtime_checkable
class NativeIncrement(Protocol):
    """Optional capability: server-side atomic increment.

    Returns ``(new_value, created)`` or None when the target cannot be handled
    natively (the coordinator then falls back to read-modify-write).
    """

    async def increment(
        self,
        table: str,
        key: DbKey,
        segments: tuple[str, ...],
        delta: int | float,
    ) -> tuple[float, bool] | None: ...


@dataclass(frozen=True)
class StorageTarget:
    """Resolved storage target from a storage URI."""

    backend: str
    uri: str
    path: str | None = None
    region: str | None = None
    endpoint_url: str | None = None
    database: str | None = None


def parse_storage_target(storage_uri: str | None = None) -> StorageTarget:
    """Resolve a backend target from ``file://``, ``dynamodb://`` or ``mongodb://`` URIs.

    A missing URI selects the local file engine under the configured root.
    """
    if storage_uri is None:
        return StorageTarget(backend="file", uri="file://")

    parsed = urlparse(storage_uri)

    if parsed.scheme == "file":
        path = unquote(parsed.path)
        if parsed.netloc:
            path = f"{parsed.netloc}{path}"
        if not path:
            raise StorageBackendError("parse_storage_uri", f"Invalid file URI: {storage_uri}")
        return StorageTarget(backend="file", uri=storage_uri, path=path)

    if parsed.scheme == "dynamodb":
        query = parse_qs(parsed.query)
        endpoint = query.get("endpoint", [None])[0]
        return StorageTarget(
            backend="dynamodb",
            uri=storage_uri,
            region=parsed.netloc or None,
            endpoint_url=endpoint,
        )

    if parsed.scheme in ("mongodb", "mongodb+srv"):
        if not parsed.netloc:
            raise StorageBackendError("parse_storage_uri", f"Invalid MongoDB URI: {storage_uri}")
        database = parsed.path.lstrip("/") or None
        return StorageTarget(backend="mongodb", uri=storage_uri, database=database)

    raise StorageBackendError(
        "parse_storage_uri",
        f"Unsupported storage URI scheme '{parsed.scheme}' for '{storage_uri}'",
    )


def open_backend(
    storage_uri: str | None = None,
    *,
    config: PolydocConfig | None = None,
) -> BackendAdapter:
    """Open a backend adapter from a storage URI."""
    cfg = config or PolydocConfig()
    target = parse_storage_target(storage_uri)
    if target.backend == "file":
        from polydoc.storage_local import LocalFileBackend

        return LocalFileBackend(
            root=target.path or cfg.local_root,
            database_name=cfg.database_name,
        )
    if target.backend == "dynamodb":
        from polydoc.storage_dynamodb import DynamoDBBackend

        return DynamoDBBackend(
            database_name=cfg.database_name,
            region=target.region or cfg.dynamodb_region,
            endpoint_url=target.endpoint_url or cfg.dynamodb_endpoint_url,
            config=cfg,
        )
    if target.backend == "mongodb":
        from polydoc.storage_mongo import MongoBackend

        return MongoBackend(
            uri=target.uri,
            database_name=target.database or cfg.mongo_database or cfg.database_name,
            config=cfg,
        )
    raise StorageBackendError("open_backend", f"Unsupported backend '{target.backend}'")


def open_service(
    storage_uri: str | None = None,
    *,
    config: PolydocConfig | None = None,
    mutex: MutexProvider | None = None,
    hooks: StoreHooks | None = None,
) -> DatabaseService:
    """Open a backend and wrap it in a mutex-guarded DatabaseService."""
    from polydoc.service import DatabaseService

    cfg = config or PolydocConfig()
    backend = open_backend(storage_uri, config=cfg)
    return DatabaseService(backend, config=cfg, mutex=mutex, hooks=hooks)


__all__ = [
    "BackendAdapter",
    "NativeIncrement",
    "StorageTarget",
    "parse_storage_target",
    "open_backend",
    "open_service",
]
