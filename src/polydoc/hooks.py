"""Bookkeeping hooks invoked by the write coordinator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from polydoc.types import DbKey, Document


@runtime_checkable
class StoreHooks(Protocol):
    """Callbacks around writes.

    ``sanity_check`` runs before any mutation and rejects a write by raising
    ValidationError. ``post_insert`` runs concurrently with the physical write of
    a put or of an item created by update/array-add/increment. ``post_drop`` runs
    concurrently with a table drop.
    """

    @property
    def hidden_tables(self) -> frozenset[str]: ...

    async def sanity_check(self, table: str, key: DbKey, document: Document) -> None: ...

    async def post_insert(self, table: str, key: DbKey) -> None: ...

    async def post_drop(self, table: str) -> None: ...


class NoopHooks:
    @property
    def hidden_tables(self) -> frozenset[str]:
        return frozenset()

    async def sanity_check(self, table: str, key: DbKey, document: Document) -> None:
        return None

    async def post_insert(self, table: str, key: DbKey) -> None:
        return None

    async def post_drop(self, table: str) -> None:
        return None
