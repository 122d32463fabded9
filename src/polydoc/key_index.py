"""Per-table key-name index kept in a hidden system table."""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, nullcontext
from typing import Any

from polydoc.coordinator import ConditionalWriteCoordinator
from polydoc.errors import PreconditionFailedError, ValidationError
from polydoc.filters import array_element_not_exists
from polydoc.hooks import NoopHooks
from polydoc.mutex import MutexProvider
from polydoc.primitive import Primitive
from polydoc.storage import BackendAdapter
from polydoc.types import DbKey, Document

logger = logging.getLogger(__name__)

SYSTEM_TABLE = "polydoc-system-table"
SYSTEM_KEY_NAME = "table"
KEYS_ATTRIBUTE = "keys"


def _system_key(table: str) -> DbKey:
    return DbKey(SYSTEM_KEY_NAME, Primitive.string(table))


class KeyIndexHooks:
    """Records which key attribute names each table uses.

    After an insert the key name is appended to the table's entry in the system
    table; a drop removes the entry (and the system table once it is empty).
    Writes whose attribute names collide with a key name used in that table are
    rejected by ``sanity_check``.
    """

    def __init__(
        self,
        backend: BackendAdapter,
        *,
        mutex: MutexProvider | None = None,
        mutex_scope: str = "polydoc.database",
        mutex_entity: str = SYSTEM_TABLE,
        mutex_ttl_s: float = 60.0,
        max_attempts: int = 5,
        retry_delay_s: float = 5.0,
    ) -> None:
        self._system = ConditionalWriteCoordinator(
            backend,
            hooks=NoopHooks(),
            max_attempts=max_attempts,
            retry_delay_s=retry_delay_s,
        )
        self._mutex = mutex
        self._mutex_scope = mutex_scope
        self._mutex_entity = mutex_entity
        self._mutex_ttl_s = mutex_ttl_s

    def _locked(self) -> AbstractAsyncContextManager[Any]:
        if self._mutex is None:
            return nullcontext()
        return self._mutex.acquire(self._mutex_scope, self._mutex_entity, self._mutex_ttl_s)

    @property
    def hidden_tables(self) -> frozenset[str]:
        return frozenset({SYSTEM_TABLE})

    async def get_table_keys(self, table: str) -> list[str]:
        async with self._locked():
            result = await self._system.get_item(SYSTEM_TABLE, _system_key(table))
        if not result.ok:
            assert result.error is not None
            raise result.error
        if result.value is None:
            return []
        keys = result.value.get(KEYS_ATTRIBUTE)
        return [str(k) for k in keys] if isinstance(keys, list) else []

    async def sanity_check(self, table: str, key: DbKey, document: Document) -> None:
        if table == SYSTEM_TABLE:
            return
        key_names = set(await self.get_table_keys(table))
        key_names.discard(key.name)
        clashes = sorted(name for name in document if name in key_names)
        if clashes:
            raise ValidationError(
                f"Attribute(s) {clashes} are key names in table '{table}' and cannot be "
                "stored as item attributes"
            )

    async def post_insert(self, table: str, key: DbKey) -> None:
        if table == SYSTEM_TABLE:
            return
        async with self._locked():
            result = await self._system.add_elements_to_array(
                SYSTEM_TABLE,
                _system_key(table),
                KEYS_ATTRIBUTE,
                [key.name],
                condition=array_element_not_exists(KEYS_ATTRIBUTE, key.name),
            )
        if result.ok or isinstance(result.error, PreconditionFailedError):
            return
        assert result.error is not None
        raise result.error

    async def post_drop(self, table: str) -> None:
        if table == SYSTEM_TABLE:
            return
        async with self._locked():
            deleted = await self._system.delete_item(SYSTEM_TABLE, _system_key(table))
            if not deleted.ok:
                assert deleted.error is not None
                raise deleted.error
            remaining = await self._system.scan_table(SYSTEM_TABLE)
            if remaining.ok and not remaining.value:
                logger.debug("Key index is empty; dropping system table")
                dropped = await self._system.drop_table(SYSTEM_TABLE)
                if not dropped.ok:
                    assert dropped.error is not None
                    raise dropped.error
