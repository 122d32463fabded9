"""Backend-agnostic conditional write coordinator.

Every operation reads the current document through the backend adapter, checks
the condition tree client-side, computes the new document and writes it back
with a CREATE or REPLACE precondition. Expected outcomes (not found, condition
failed, already exists, bad arguments, exhausted retries) are returned as
failed OperationResults. Faults the backend classifies as retriable are retried
with a fixed delay.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import math
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from polydoc.errors import (
    AlreadyExistsError,
    ContentionError,
    NotFoundError,
    PolydocError,
    PreconditionFailedError,
    StorageBackendError,
    ValidationError,
)
from polydoc.evaluation import element_matches, evaluate
from polydoc.filters import MISSING, Condition, parse_attribute_path
from polydoc.hooks import NoopHooks, StoreHooks
from polydoc.options import DbOptions, apply_options
from polydoc.pagination import ScanPage
from polydoc.primitive import Primitive
from polydoc.result import OperationResult
from polydoc.storage import BackendAdapter, NativeIncrement
from polydoc.types import DbKey, Document, ReturnBehavior, WriteMode

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY_S = 5.0


def check_table_name(table: Any) -> ValidationError | None:
    if not isinstance(table, str) or not table.strip():
        return ValidationError("Table name must not be empty")
    return None


def _check_key(key: Any) -> ValidationError | None:
    if not isinstance(key, DbKey):
        return ValidationError(f"Expected DbKey, got {type(key).__name__}")
    return None


def _check_path(
    attribute: Any, key: DbKey
) -> tuple[tuple[str, ...] | None, ValidationError | None]:
    try:
        segments = parse_attribute_path(attribute)
    except ValidationError as e:
        return None, e
    if segments[0] == key.name:
        return None, ValidationError(f"Attribute '{attribute}' targets the key attribute")
    return segments, None


def _check_elements(elements: Sequence[Any]) -> tuple[list[Primitive], ValidationError | None]:
    if isinstance(elements, (str, bytes)) or not elements:
        return [], ValidationError("Element batch must be a non-empty sequence")
    try:
        prims = [Primitive.of(e) for e in elements]
    except ValidationError as e:
        return [], e
    kinds = {p.kind for p in prims}
    if len(kinds) > 1:
        names = sorted(k.value for k in kinds)
        return [], ValidationError(f"All elements must share one primitive kind, got {names}")
    return prims, None


def _strip_key(document: Document, key: DbKey) -> Document:
    return {k: v for k, v in document.items() if k != key.name}


def _attach_key(document: Document, key: DbKey) -> Document:
    out: Document = {key.name: key.value.to_json()}
    out.update(_strip_key(document, key))
    return out


def _with_requested_key(document: Document, keys: Sequence[DbKey]) -> Document:
    for key in keys:
        if key.name in document and element_matches(document[key.name], key.value):
            return _attach_key(document, key)
    return document


def _project(document: Document, attributes: Sequence[str] | None, key: DbKey | None) -> Document:
    if attributes is None:
        return document
    wanted = set(attributes)
    if key is not None:
        wanted.add(key.name)
    return {k: v for k, v in document.items() if k in wanted}


def _container_for(
    document: Document, segments: tuple[str, ...], *, create: bool
) -> dict[str, Any] | None:
    """Walk to the object holding the last segment, optionally creating intermediates."""
    current: Any = document
    for segment in segments[:-1]:
        nxt = current.get(segment, MISSING)
        if nxt is MISSING or (nxt is None and create):
            if not create:
                return None
            nxt = {}
            current[segment] = nxt
        if not isinstance(nxt, dict):
            raise ValidationError(
                f"Attribute '{'.'.join(segments)}' crosses non-object value at '{segment}'"
            )
        current = nxt
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConditionalWriteCoordinator:
    """Put/update/delete/array/increment semantics written once over any BackendAdapter."""

    def __init__(
        self,
        backend: BackendAdapter,
        *,
        hooks: StoreHooks | None = None,
        options: DbOptions | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.backend = backend
        self.hooks: StoreHooks = hooks or NoopHooks()
        self.options = options or DbOptions()
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s

    # --- Plumbing ---

    async def _run(
        self,
        operation: str,
        attempt: Callable[[], Awaitable[OperationResult[T]]],
    ) -> OperationResult[T]:
        """Run one attempt at a time until it returns, retrying retriable backend faults."""
        for number in range(1, self.max_attempts + 1):
            try:
                return await attempt()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.backend.is_retriable(e):
                    if number >= self.max_attempts:
                        logger.warning(
                            f"{operation}: giving up after {number} attempts due to contention"
                        )
                        return OperationResult.failure(ContentionError(number))
                    logger.warning(
                        f"{operation}: retriable backend fault on attempt {number}/"
                        f"{self.max_attempts}, retrying in {self.retry_delay_s}s: {e}"
                    )
                    await asyncio.sleep(self.retry_delay_s)
                    continue
                if isinstance(e, PolydocError):
                    return OperationResult.failure(e)
                logger.exception(f"{operation}: unexpected backend fault")
                return OperationResult.failure(StorageBackendError(operation, str(e)))
        raise AssertionError("unreachable")

    def _finish(self, document: Document | None, key: DbKey | None = None) -> Document | None:
        if document is None:
            return None
        if key is not None:
            document = _attach_key(document, key)
        return apply_options(document, self.options)

    def _returned(
        self,
        behavior: ReturnBehavior,
        key: DbKey,
        old: Document | None,
        new: Document | None,
    ) -> OperationResult[Document]:
        if behavior is ReturnBehavior.RETURN_OLD_VALUES:
            return OperationResult.success(self._finish(old, key))
        if behavior is ReturnBehavior.RETURN_NEW_VALUES:
            return OperationResult.success(self._finish(new, key))
        return OperationResult.success(None)

    async def _write(
        self,
        table: str,
        key: DbKey,
        document: Document,
        *,
        existed: bool,
        notify_insert: bool,
    ) -> None:
        mode = WriteMode.REPLACE if existed else WriteMode.CREATE
        body = _strip_key(document, key)
        if not notify_insert:
            await self.backend.write(table, key, body, mode)
            return
        results = await asyncio.gather(
            self.backend.write(table, key, body, mode),
            self.hooks.post_insert(table, key),
            return_exceptions=True,
        )
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome

    @staticmethod
    def _validate(*errors: ValidationError | None) -> ValidationError | None:
        for err in errors:
            if err is not None:
                return err
        return None

    # --- Reads ---

    async def item_exists(
        self,
        table: str,
        key: DbKey,
        condition: Condition | None = None,
    ) -> OperationResult[bool]:
        """Success(True) when present and matching; NotFound or PreconditionFailed otherwise."""
        err = self._validate(check_table_name(table), _check_key(key))
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[bool]:
            current = await self.backend.get(table, key)
            if current is None:
                return OperationResult.failure(NotFoundError(table, str(key)))
            if not evaluate(current, condition):
                return OperationResult.failure(PreconditionFailedError(table, str(key)))
            return OperationResult.success(True)

        return await self._run("item_exists", attempt)

    async def get_item(
        self,
        table: str,
        key: DbKey,
        attributes: Sequence[str] | None = None,
    ) -> OperationResult[Document]:
        err = self._validate(check_table_name(table), _check_key(key))
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[Document]:
            current = await self.backend.get(table, key)
            if current is None:
                return OperationResult.success(None)
            return OperationResult.success(self._finish(_project(current, attributes, key), key))

        return await self._run("get_item", attempt)

    async def get_items(
        self,
        table: str,
        keys: Sequence[DbKey],
        attributes: Sequence[str] | None = None,
    ) -> OperationResult[list[Document]]:
        err = self._validate(check_table_name(table), *(_check_key(k) for k in keys))
        if err is not None:
            return OperationResult.failure(err)
        if not keys:
            return OperationResult.success([])

        key_names = [k.name for k in keys]
        wanted = None if attributes is None else [*attributes, *key_names]

        async def attempt() -> OperationResult[list[Document]]:
            found = await self.backend.get_many(table, keys)
            out = [
                apply_options(_project(_with_requested_key(doc, keys), wanted, None), self.options)
                for doc in found
            ]
            return OperationResult.success(out)

        return await self._run("get_items", attempt)

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
        """Store ``item`` wholesale; fails with AlreadyExists unless overwriting is allowed."""
        err = self._validate(check_table_name(table), _check_key(key))
        if err is None and not isinstance(item, dict):
            err = ValidationError("Item must be a JSON object")
        if err is not None:
            return OperationResult.failure(err)
        body = copy.deepcopy(_strip_key(item, key))

        async def attempt() -> OperationResult[Document]:
            await self.hooks.sanity_check(table, key, body)
            existing = await self.backend.get(table, key)
            if existing is not None and not overwrite_if_exists:
                return OperationResult.failure(AlreadyExistsError(table, str(key)))
            await self._write(
                table, key, body, existed=existing is not None, notify_insert=True
            )
            return self._returned(return_behavior, key, existing, body)

        return await self._run("put_item", attempt)

    async def update_item(
        self,
        table: str,
        key: DbKey,
        updates: Document,
        *,
        condition: Condition | None = None,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        """Shallow-merge ``updates`` into the current document, creating it when absent.

        The condition is evaluated against the current document, or against an
        empty document when the item does not exist yet.
        """
        err = self._validate(check_table_name(table), _check_key(key))
        if err is None and not isinstance(updates, dict):
            err = ValidationError("Updates must be a JSON object")
        if err is not None:
            return OperationResult.failure(err)
        changes = _strip_key(updates, key)

        async def attempt() -> OperationResult[Document]:
            await self.hooks.sanity_check(table, key, changes)
            existing = await self.backend.get(table, key)
            if not evaluate(existing or {}, condition):
                return OperationResult.failure(PreconditionFailedError(table, str(key)))
            merged = _strip_key(existing, key) if existing is not None else {}
            merged.update(copy.deepcopy(changes))
            await self._write(
                table,
                key,
                merged,
                existed=existing is not None,
                notify_insert=existing is None,
            )
            return self._returned(return_behavior, key, existing, merged)

        return await self._run("update_item", attempt)

    async def delete_item(
        self,
        table: str,
        key: DbKey,
        *,
        condition: Condition | None = None,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> OperationResult[Document]:
        """Delete the item; a missing item is a successful no-op."""
        err = self._validate(check_table_name(table), _check_key(key))
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[Document]:
            existing = await self.backend.get(table, key)
            if existing is None:
                return OperationResult.success(None)
            if not evaluate(existing, condition):
                return OperationResult.failure(PreconditionFailedError(table, str(key)))
            await self.backend.delete(table, key)
            if return_behavior is ReturnBehavior.RETURN_OLD_VALUES:
                return OperationResult.success(self._finish(existing, key))
            return OperationResult.success(None)

        return await self._run("delete_item", attempt)

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
        """Append elements to the list at ``attribute``, creating item, path and list as needed."""
        err = self._validate(check_table_name(table), _check_key(key))
        segments: tuple[str, ...] | None = None
        prims: list[Primitive] = []
        if err is None:
            segments, err = _check_path(attribute, key)
        if err is None:
            prims, err = _check_elements(elements)
        if err is not None:
            return OperationResult.failure(err)
        assert segments is not None
        values = [p.to_json() for p in prims]

        async def attempt() -> OperationResult[Document]:
            await self.hooks.sanity_check(table, key, {segments[0]: values})
            existing = await self.backend.get(table, key)
            if not evaluate(existing or {}, condition):
                return OperationResult.failure(PreconditionFailedError(table, str(key)))
            updated = copy.deepcopy(_strip_key(existing, key)) if existing is not None else {}
            container = _container_for(updated, segments, create=True)
            assert container is not None
            target = container.get(segments[-1], MISSING)
            if target is MISSING or target is None:
                target = []
                container[segments[-1]] = target
            if not isinstance(target, list):
                raise ValidationError(f"Attribute '{attribute}' is not an array")
            target.extend(values)
            await self._write(
                table,
                key,
                updated,
                existed=existing is not None,
                notify_insert=existing is None,
            )
            return self._returned(return_behavior, key, existing, updated)

        return await self._run("add_elements_to_array", attempt)

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
        """Remove every array entry equal to any given element; a missing item is a no-op."""
        err = self._validate(check_table_name(table), _check_key(key))
        segments: tuple[str, ...] | None = None
        prims: list[Primitive] = []
        if err is None:
            segments, err = _check_path(attribute, key)
        if err is None:
            prims, err = _check_elements(elements)
        if err is not None:
            return OperationResult.failure(err)
        assert segments is not None

        async def attempt() -> OperationResult[Document]:
            existing = await self.backend.get(table, key)
            if existing is None:
                return OperationResult.success(None)
            if not evaluate(existing, condition):
                return OperationResult.failure(PreconditionFailedError(table, str(key)))
            updated = copy.deepcopy(_strip_key(existing, key))
            container = _container_for(updated, segments, create=False)
            target = MISSING if container is None else container.get(segments[-1], MISSING)
            if target is MISSING or target is None:
                return self._returned(return_behavior, key, existing, updated)
            if not isinstance(target, list):
                raise ValidationError(f"Attribute '{attribute}' is not an array")
            kept = [v for v in target if not any(element_matches(v, p) for p in prims)]
            if len(kept) != len(target):
                container[segments[-1]] = kept
                await self._write(table, key, updated, existed=True, notify_insert=False)
            return self._returned(return_behavior, key, existing, updated)

        return await self._run("remove_elements_from_array", attempt)

    async def increment_attribute(
        self,
        table: str,
        key: DbKey,
        attribute: str,
        delta: int | float,
        *,
        condition: Condition | None = None,
    ) -> OperationResult[float]:
        """Add ``delta`` to the number at ``attribute`` (missing or non-numeric counts as 0).

        Returns the new value. Unconditional increments use the backend's
        native atomic increment when it offers one for the path.
        """
        err = self._validate(check_table_name(table), _check_key(key))
        segments: tuple[str, ...] | None = None
        if err is None:
            segments, err = _check_path(attribute, key)
        if err is None and (not _is_number(delta) or not math.isfinite(delta)):
            err = ValidationError(f"Increment delta must be a finite number, got {delta!r}")
        if err is not None:
            return OperationResult.failure(err)
        assert segments is not None

        async def attempt() -> OperationResult[float]:
            await self.hooks.sanity_check(table, key, {segments[0]: delta})
            if (condition is None or condition.is_empty) and isinstance(
                self.backend, NativeIncrement
            ):
                native = await self.backend.increment(table, key, segments, delta)
                if native is not None:
                    value, created = native
                    if created:
                        await self.hooks.post_insert(table, key)
                    return OperationResult.success(value)
            existing = await self.backend.get(table, key)
            if not evaluate(existing or {}, condition):
                return OperationResult.failure(PreconditionFailedError(table, str(key)))
            updated = copy.deepcopy(_strip_key(existing, key)) if existing is not None else {}
            container = _container_for(updated, segments, create=True)
            assert container is not None
            current = container.get(segments[-1])
            base = current if _is_number(current) else 0
            new_value = base + delta
            container[segments[-1]] = new_value
            await self._write(
                table,
                key,
                updated,
                existed=existing is not None,
                notify_insert=existing is None,
            )
            return OperationResult.success(float(new_value))

        return await self._run("increment_attribute", attempt)

    # --- Scans ---

    def _finish_page(self, page: ScanPage[Document]) -> ScanPage[Document]:
        page.items = [apply_options(doc, self.options) for doc in page.items]
        return page

    @staticmethod
    def _check_page_size(page_size: Any) -> ValidationError | None:
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            return ValidationError(f"Page size must be a positive integer, got {page_size!r}")
        return None

    async def scan_table(self, table: str) -> OperationResult[list[Document]]:
        err = check_table_name(table)
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[list[Document]]:
            page = await self.backend.scan(table)
            return OperationResult.success(self._finish_page(page).items)

        return await self._run("scan_table", attempt)

    async def scan_table_paginated(
        self,
        table: str,
        page_size: int,
        cursor: str | None = None,
    ) -> OperationResult[ScanPage[Document]]:
        err = self._validate(check_table_name(table), self._check_page_size(page_size))
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[ScanPage[Document]]:
            page = await self.backend.scan(table, cursor=cursor, page_size=page_size)
            return OperationResult.success(self._finish_page(page))

        return await self._run("scan_table_paginated", attempt)

    async def scan_table_with_filter(
        self,
        table: str,
        condition: Condition,
    ) -> OperationResult[list[Document]]:
        err = check_table_name(table)
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[list[Document]]:
            page = await self.backend.scan_filtered(table, condition)
            return OperationResult.success(self._finish_page(page).items)

        return await self._run("scan_table_with_filter", attempt)

    async def scan_table_with_filter_paginated(
        self,
        table: str,
        condition: Condition,
        page_size: int,
        cursor: str | None = None,
    ) -> OperationResult[ScanPage[Document]]:
        err = self._validate(check_table_name(table), self._check_page_size(page_size))
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[ScanPage[Document]]:
            page = await self.backend.scan_filtered(
                table, condition, cursor=cursor, page_size=page_size
            )
            return OperationResult.success(self._finish_page(page))

        return await self._run("scan_table_with_filter_paginated", attempt)

    # --- Tables ---

    async def list_tables(self) -> OperationResult[list[str]]:
        async def attempt() -> OperationResult[list[str]]:
            hidden = self.hooks.hidden_tables
            names = await self.backend.list_tables()
            return OperationResult.success([n for n in names if n not in hidden])

        return await self._run("list_tables", attempt)

    async def drop_table(self, table: str) -> OperationResult[None]:
        """Remove a table and all of its items; dropping a missing table succeeds."""
        err = check_table_name(table)
        if err is not None:
            return OperationResult.failure(err)

        async def attempt() -> OperationResult[None]:
            results = await asyncio.gather(
                self.backend.drop_table(table),
                self.hooks.post_drop(table),
                return_exceptions=True,
            )
            for outcome in results:
                if isinstance(outcome, BaseException):
                    raise outcome
            return OperationResult.success(None)

        return await self._run("drop_table", attempt)
