"""Copy every table from one database service to another."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from polydoc.errors import PolydocError, StorageBackendError
from polydoc.primitive import Primitive
from polydoc.result import OperationResult
from polydoc.service import DatabaseService
from polydoc.types import DbKey, Document

logger = logging.getLogger(__name__)

MIGRATION_PAGE_SIZE = 100


@dataclass
class MigrationResult:
    """Summary of a completed table migration."""

    tables: list[str] = field(default_factory=list)
    items_copied: int = 0
    dropped_destination_tables: list[str] = field(default_factory=list)
    dropped_source_tables: list[str] = field(default_factory=list)


def _key_for(document: Document, key_names: list[str], table: str) -> DbKey:
    for name in key_names:
        if name in document and document[name] is not None:
            return DbKey(name, Primitive.from_document_value(document[name]))
    raise StorageBackendError(
        "migrate_tables",
        f"Cannot determine the key of an item in table '{table}' (known keys: {key_names})",
    )


async def migrate_tables(
    source: DatabaseService,
    destination: DatabaseService,
    *,
    clean_destination_first: bool = False,
    clean_source_after: bool = False,
    page_size: int = MIGRATION_PAGE_SIZE,
) -> OperationResult[MigrationResult]:
    """Copy all tables of ``source`` into ``destination``, overwriting existing items.

    Item keys are recovered from the source's key index, so both services must
    track table keys (the default). Byte-array key values arrive as their Base64
    text.
    """
    summary = MigrationResult()
    try:
        tables = (await source.list_tables()).unwrap()
        if clean_destination_first:
            for table in (await destination.list_tables()).unwrap():
                res = await destination.drop_table(table)
                if not res.ok:
                    return OperationResult.failure(res.error)  # type: ignore[arg-type]
                summary.dropped_destination_tables.append(table)

        for table in tables:
            key_names = (await source.get_table_keys(table)).unwrap()
            cursor: str | None = None
            while True:
                page = (await source.scan_table_paginated(table, page_size, cursor)).unwrap()
                for item in page.items:
                    key = _key_for(item, key_names, table)
                    put = await destination.put_item(table, key, item, overwrite_if_exists=True)
                    if not put.ok:
                        return OperationResult.failure(put.error)  # type: ignore[arg-type]
                    summary.items_copied += 1
                cursor = page.next_cursor
                if cursor is None:
                    break
            summary.tables.append(table)
            logger.info(f"Migrated table '{table}'")

        if clean_source_after:
            for table in tables:
                res = await source.drop_table(table)
                if not res.ok:
                    return OperationResult.failure(res.error)  # type: ignore[arg-type]
                summary.dropped_source_tables.append(table)
    except PolydocError as e:
        return OperationResult.failure(e)
    return OperationResult.success(summary)
