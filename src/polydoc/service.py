"""Mutex-guarded database service: the public entry point over one backend."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from polydoc.config import PolydocConfig
from polydoc.coordinator import ConditionalWriteCoordinator, check_table_name
from polydoc.errors import PolydocError
from polydoc.filters import Condition
from polydoc.hooks import StoreHooks
from polydoc.key_index import SYSTEM_TABLE, KeyIndexHooks
from polydoc.mutex import InProcessMutexProvider, MutexProvider
from polydoc.options import DbOptions
from polydoc.pagination import ScanPage
from polydoc.result import OperationResult
from polydoc.storage import BackendAdapter
from polydoc.types import DbKey, Document, ReturnBehavior

logger = logging.getLogger(__name__)

T = TypeVar("T")

MUTEX_SCOPE = "polydoc.database"


class DatabaseService:
    """Serializes every operation on a table through a named mutex.

    The mutex entity is ``<database>:<table>``, so all operations on one table
    run one at a time across every process sharing the mutex provider. Table
    key names are tracked in a hidden system table unless ``hooks`` is given.
    """

    def __init__(
        self,
        backend: BackendAdapter,
        *,
        config: PolydocConfig | None = None,
        mutex: MutexProvider | None = None,
        hooks: StoreHooks | None = None,
        options: DbOptions | None = None,
    ) -> None:
        cfg = config or PolydocConfig()
        self.config = cfg
        self.backend = backend
        self._mutex: MutexProvider = mutex or InProcessMutexProvider(
            timeout_s=cfg.mutex_acquire_timeout_s
        )
        if hooks is None:
            hooks = KeyIndexHooks(
                backend,
                mutex=self._mutex,
                mutex_scope=MUTEX_SCOPE,
                mutex_entity=self._entity(SYSTEM_TABLE),
                mutex_ttl_s=cfg.mutex_ttl_s,
                max_attempts=cfg.contention_max_attempts,
                retry_delay_s=cfg.contention_retry_delay_s,
            )
        self.hooks = hooks
        self._coordinator = ConditionalWriteCoordinator(
            backend,
            hooks=hooks,
            options=options
            or DbOptions(
                auto_sort_arrays=cfg.auto_sort_arrays,
                auto_convert_roundable_float_to_int=cfg.auto_convert_roundable_float_to_int,
            ),
            max_attempts=cfg.contention_max_attempts,
            retry_delay_s=cfg.contention_retry_delay_s,
        )

    @property
    def is_initialized(self) -> bool:
        return self.backend.is_initialized

    @property
    def options(self) -> DbOptions:
        return self._coordinator.options

    def set_options(self, options: DbOptions) -> None:
        self._coordinator.options = options

    def _entity(self, table: str) -> str:
        return f"{self.config.database_name}:{table}"

    async def _locked(
        self,
        table: str,
        call: Callable[[], Awaitable[OperationResult[T]]],
    ) -> OperationResult[T]:
        err = check_table_name(table)
        if err is not None:
            return OperationResult.failure(err)
        try:
            lock = self._mutex.acquire(MUTEX_SCOPE, self._entity(table), self.config.mutex_ttl_s)
            async with lock:
                return await call()
        except PolydocError as e:
            logger.warning(f"Could not lock table '{table}': {e}")
            return OperationResult.failure(e)

    # --- Reads ---

    async def item_exists(
        self, table: str, key: DbKey, condition: Condition | None = None
    ) -> OperationResult[bool]:
        return await self._locked(
            table, lambda: self._coordinator.item_exists(table, key, condition)
        )

    async def get_item(
        self, table: str, key: DbKey, attributes: Sequence[str] | None = None
    ) -> OperationResult[Document]:
        return await self._locked(table, lambda: self._coordinator.get_item(table, key, attributes))

    async def get_items(
        self, table: str, keys: Sequence[DbKey], attributes: Sequence[str] | None = None
    ) -> OperationResult[list[Document]]:
        return await self._locked(
            table, lambda: self._coordinator.get_items(table, keys, attributes)
        )

    # --- Writes ---

    async def put_item(
        self,
        table: str,
        key: DbKey,
        item: Document,
        *,
        overwrite_if_exists: bool = False,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        return await self._locked(
            table,
            lambda: self._coordinator.put_item(
                table,
                key,
                item,
                overwrite_if_exists=overwrite_if_exists,
                return_behavior=return_behavior,
            ),
        )

    async def update_item(
        self,
        table: str,
        key: DbKey,
        updates: Document,
        *,
        condition: Condition | None = None,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        return await self._locked(
            table,
            lambda: self._coordinator.update_item(
                table, key, updates, condition=condition, return_behavior=return_behavior
            ),
        )

    async def delete_item(
        self,
        table: str,
        key: DbKey,
        *,
        condition: Condition | None = None,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        return await self._locked(
            table,
            lambda: self._coordinator.delete_item(
                table, key, condition=condition, return_behavior=return_behavior
            ),
        )

    async def add_elements_to_array(
        self,
        table: str,
        key: DbKey,
        attribute: str,
        elements: Sequence[Any],
        *,
        condition: Condition | None = None,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        return await self._locked(
            table,
            lambda: self._coordinator.add_elements_to_array(
                table,
                key,
                attribute,
                elements,
                condition=condition,
                return_behavior=return_behavior,
            ),
        )

    async def remove_elements_from_array(
        self,
        table: str,
        key: DbKey,
        attribute: str,
        elements: Sequence[Any],
        *,
        condition: Condition | None = None,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        return await self._locked(
            table,
            lambda: self._coordinator.remove_elements_from_array(
                table,
                key,
                attribute,
                elements,
                condition=condition,
                return_behavior=return_behavior,
            ),
        )

    async def increment_attribute(
        self,
        table: str,
        key: DbKey,
        attribute: str,
        delta: int | float,
        *,
        condition: Condition | None = None,
    ) -> OperationResult[float]:
        return await self._locked(
            table,
            lambda: self._coordinator.increment_attribute(
                table, key, attribute, delta, condition=condition
            ),
        )

    # --- Scans ---

    async def scan_table(self, table: str) -> OperationResult[list[Document]]:
        return await self._locked(table, lambda: self._coordinator.scan_table(table))

    async def scan_table_paginated(
        self, table: str, page_size: int, cursor: str | None = None
    ) -> OperationResult[ScanPage[Document]]:
        return await self._locked(
            table, lambda: self._coordinator.scan_table_paginated(table, page_size, cursor)
        )

    async def scan_table_with_filter(
        self, table: str, condition: Condition
    ) -> OperationResult[list[Document]]:
        return await self._locked(
            table, lambda: self._coordinator.scan_table_with_filter(table, condition)
        )

    async def scan_table_with_filter_paginated(
        self,
        table: str,
        condition: Condition,
        page_size: int,
        cursor: str | None = None,
    ) -> OperationResult[ScanPage[Document]]:
        return await self._locked(
            table,
            lambda: self._coordinator.scan_table_with_filter_paginated(
                table, condition, page_size, cursor
            ),
        )

    # --- Tables ---

    async def list_tables(self) -> OperationResult[list[str]]:
        return await self._coordinator.list_tables()

    async def drop_table(self, table: str) -> OperationResult[None]:
        return await self._locked(table, lambda: self._coordinator.drop_table(table))

    async def get_table_keys(self, table: str) -> OperationResult[list[str]]:
        """Key attribute names used by items of ``table`` (requires the key index hooks)."""
        err = check_table_name(table)
        if err is not None:
            return OperationResult.failure(err)
        if not isinstance(self.hooks, KeyIndexHooks):
            return OperationResult.success([])
        try:
            keys = await self.hooks.get_table_keys(table)
        except PolydocError as e:
            return OperationResult.failure(e)
        return OperationResult.success(keys)

    def close(self) -> None:
        self.backend.close()
