"""Tests for the conditional write coordinator over the local file engine."""

from __future__ import annotations

import asyncio

import pytest

from polydoc.coordinator import ConditionalWriteCoordinator
from polydoc.errors import (
    AlreadyExistsError,
    ContentionError,
    NotFoundError,
    PreconditionFailedError,
    StorageBackendError,
    ValidationError,
    WriteConflictError,
)
from polydoc.filters import (
    array_element_exists,
    attribute_equals,
    attribute_exists,
    attribute_greater,
    attribute_not_exists,
)
from polydoc.options import DbOptions
from polydoc.result import ResultStatus
from polydoc.storage_local import LocalFileBackend
from polydoc.types import DbKey, ReturnBehavior, WriteMode

U1 = DbKey("id", "u1")


class RecordingHooks:
    def __init__(self, reject: set[str] | None = None) -> None:
        self.inserted: list[tuple[str, DbKey]] = []
        self.dropped: list[str] = []
        self.reject = reject or set()

    @property
    def hidden_tables(self) -> frozenset[str]:
        return frozenset({"hidden"})

    async def sanity_check(self, table, key, document) -> None:
        bad = self.reject.intersection(document)
        if bad:
            raise ValidationError(f"rejected {sorted(bad)}")

    async def post_insert(self, table, key) -> None:
        self.inserted.append((table, key))

    async def post_drop(self, table) -> None:
        self.dropped.append(table)


class FlakyBackend(LocalFileBackend):
    """Raises a retriable conflict on the first ``failures`` writes."""

    def __init__(self, *args, failures: int = 0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.write_calls = 0

    async def write(self, table, key, document, mode=WriteMode.UPSERT):
        self.write_calls += 1
        if self.write_calls <= self.failures:
            raise WriteConflictError()
        await super().write(table, key, document, mode)


class NativeBackend(LocalFileBackend):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.increments: list[tuple[str, ...]] = []

    async def increment(self, table, key, segments, delta):
        self.increments.append(segments)
        return 42.0, True


class TestScenarios:
    async def test_put_then_get(self, coordinator):
        res = await coordinator.put_item("users", U1, {"name": "Ann", "age": 30})
        assert res.ok
        got = await coordinator.get_item("users", U1)
        assert got.value == {"id": "u1", "name": "Ann", "age": 30}

    async def test_add_elements_creates_missing_item(self, coordinator):
        res = await coordinator.add_elements_to_array("users", U1, "tags", ["vip"])
        assert res.ok
        got = await coordinator.get_item("users", U1)
        assert got.value == {"id": "u1", "tags": ["vip"]}

    async def test_failed_condition_leaves_item_untouched(self, coordinator):
        await coordinator.put_item("users", U1, {"name": "Ann", "age": 30})
        await coordinator.update_item("users", U1, {"age": 31})
        res = await coordinator.update_item(
            "users", U1, {"age": 99}, condition=attribute_equals("age", 30)
        )
        assert isinstance(res.error, PreconditionFailedError)
        assert (await coordinator.get_item("users", U1)).value["age"] == 31

    async def test_increment_creates_then_accumulates(self, coordinator):
        first = await coordinator.increment_attribute("users", U1, "score", 5)
        assert first.value == 5.0
        assert (await coordinator.get_item("users", U1)).value == {"id": "u1", "score": 5}
        second = await coordinator.increment_attribute("users", U1, "score", -2)
        assert second.value == 3.0
        assert (await coordinator.get_item("users", U1)).value["score"] == 3

    async def test_paginated_scan(self, coordinator):
        for name in ("a", "b", "c"):
            await coordinator.put_item("users", DbKey("id", name), {"n": name})
        first = await coordinator.scan_table_paginated("users", 2)
        assert len(first.value.items) == 2
        assert first.value.next_cursor is not None
        rest = await coordinator.scan_table_paginated("users", 2, first.value.next_cursor)
        assert len(rest.value.items) == 1
        assert rest.value.next_cursor is None


class TestPutAndGet:
    async def test_put_existing_without_overwrite(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1})
        res = await coordinator.put_item("users", U1, {"a": 2})
        assert isinstance(res.error, AlreadyExistsError)
        assert (await coordinator.get_item("users", U1)).value["a"] == 1

    async def test_put_overwrite_replaces_wholesale(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1, "b": 2})
        res = await coordinator.put_item(
            "users",
            U1,
            {"a": 5},
            overwrite_if_exists=True,
            return_behavior=ReturnBehavior.RETURN_OLD_VALUES,
        )
        assert res.value == {"id": "u1", "a": 1, "b": 2}
        assert (await coordinator.get_item("users", U1)).value == {"id": "u1", "a": 5}

    async def test_put_return_new_values(self, coordinator):
        res = await coordinator.put_item(
            "users", U1, {"a": 1}, return_behavior=ReturnBehavior.RETURN_NEW_VALUES
        )
        assert res.value == {"id": "u1", "a": 1}

    async def test_put_return_old_of_new_item_is_empty(self, coordinator):
        res = await coordinator.put_item(
            "users", U1, {"a": 1}, return_behavior=ReturnBehavior.RETURN_OLD_VALUES
        )
        assert res.status is ResultStatus.EMPTY

    async def test_key_attribute_in_item_is_ignored(self, coordinator):
        await coordinator.put_item("users", U1, {"id": "other", "a": 1})
        assert (await coordinator.get_item("users", U1)).value == {"id": "u1", "a": 1}

    async def test_caller_document_is_not_aliased(self, coordinator):
        item = {"tags": ["a"]}
        await coordinator.put_item("users", U1, item)
        item["tags"].append("b")
        assert (await coordinator.get_item("users", U1)).value["tags"] == ["a"]

    async def test_get_missing_is_empty_success(self, coordinator):
        res = await coordinator.get_item("users", U1)
        assert res.ok
        assert res.status is ResultStatus.EMPTY

    async def test_get_projection_keeps_key(self, coordinator):
        await coordinator.put_item("users", U1, {"name": "Ann", "age": 30})
        res = await coordinator.get_item("users", U1, attributes=["name"])
        assert res.value == {"id": "u1", "name": "Ann"}

    async def test_get_items(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1})
        await coordinator.put_item("users", DbKey("id", "u2"), {"a": 2})
        res = await coordinator.get_items(
            "users", [U1, DbKey("id", "missing"), DbKey("id", "u2")], attributes=["a"]
        )
        assert sorted(d["id"] for d in res.value) == ["u1", "u2"]
        assert all(set(d) == {"id", "a"} for d in res.value)

    async def test_item_exists(self, coordinator):
        missing = await coordinator.item_exists("users", U1)
        assert isinstance(missing.error, NotFoundError)
        await coordinator.put_item("users", U1, {"age": 30})
        assert (await coordinator.item_exists("users", U1)).value is True
        res = await coordinator.item_exists("users", U1, attribute_greater("age", 40))
        assert isinstance(res.error, PreconditionFailedError)

    async def test_options_apply_to_returned_documents(self, coordinator):
        await coordinator.put_item("users", U1, {"tags": ["b", "a"], "n": 2.0})
        coordinator.options = DbOptions(
            auto_sort_arrays=True, auto_convert_roundable_float_to_int=True
        )
        doc = (await coordinator.get_item("users", U1)).value
        assert doc["tags"] == ["a", "b"]
        assert isinstance(doc["n"], int)


class TestUpdateAndDelete:
    async def test_update_merges_shallowly(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1, "nested": {"x": 1, "y": 2}})
        res = await coordinator.update_item(
            "users",
            U1,
            {"b": 2, "nested": {"x": 9}},
            return_behavior=ReturnBehavior.RETURN_NEW_VALUES,
        )
        assert res.value == {"id": "u1", "a": 1, "b": 2, "nested": {"x": 9}}

    async def test_update_creates_missing_item(self, coordinator):
        res = await coordinator.update_item(
            "users", U1, {"a": 1}, condition=attribute_not_exists("a")
        )
        assert res.ok
        assert (await coordinator.get_item("users", U1)).value == {"id": "u1", "a": 1}

    async def test_update_condition_on_missing_item(self, coordinator):
        res = await coordinator.update_item(
            "users", U1, {"a": 1}, condition=attribute_exists("a")
        )
        assert isinstance(res.error, PreconditionFailedError)
        assert (await coordinator.get_item("users", U1)).value is None

    async def test_update_returns_old_values(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1})
        res = await coordinator.update_item(
            "users", U1, {"a": 2}, return_behavior=ReturnBehavior.RETURN_OLD_VALUES
        )
        assert res.value == {"id": "u1", "a": 1}

    async def test_delete(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1})
        res = await coordinator.delete_item(
            "users", U1, return_behavior=ReturnBehavior.RETURN_OLD_VALUES
        )
        assert res.value == {"id": "u1", "a": 1}
        assert (await coordinator.get_item("users", U1)).value is None

    async def test_delete_missing_is_noop(self, coordinator):
        res = await coordinator.delete_item("users", U1, condition=attribute_exists("a"))
        assert res.ok
        assert res.value is None

    async def test_delete_with_failed_condition(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1})
        res = await coordinator.delete_item("users", U1, condition=attribute_equals("a", 2))
        assert isinstance(res.error, PreconditionFailedError)
        assert (await coordinator.get_item("users", U1)).value is not None

    async def test_delete_new_values_returns_nothing(self, coordinator):
        await coordinator.put_item("users", U1, {"a": 1})
        res = await coordinator.delete_item(
            "users", U1, return_behavior=ReturnBehavior.RETURN_NEW_VALUES
        )
        assert res.ok
        assert res.value is None


class TestArrays:
    async def test_add_appends_and_keeps_duplicates(self, coordinator):
        await coordinator.put_item("users", U1, {"tags": ["a"]})
        res = await coordinator.add_elements_to_array(
            "users", U1, "tags", ["a", "b"], return_behavior=ReturnBehavior.RETURN_NEW_VALUES
        )
        assert res.value["tags"] == ["a", "a", "b"]

    async def test_add_to_nested_path_creates_objects(self, coordinator):
        await coordinator.put_item("users", U1, {"profile": None})
        await coordinator.add_elements_to_array("users", U1, "profile.badges", [1, 2])
        doc = (await coordinator.get_item("users", U1)).value
        assert doc["profile"] == {"badges": [1, 2]}

    async def test_add_bytes_stored_as_base64(self, coordinator):
        await coordinator.add_elements_to_array("users", U1, "blobs", [b"hi"])
        assert (await coordinator.get_item("users", U1)).value["blobs"] == ["aGk="]

    async def test_add_with_condition(self, coordinator):
        await coordinator.put_item("users", U1, {"tags": ["vip"]})
        res = await coordinator.add_elements_to_array(
            "users", U1, "tags", ["x"], condition=array_element_exists("tags", "gold")
        )
        assert isinstance(res.error, PreconditionFailedError)

    async def test_add_to_non_array_fails(self, coordinator):
        await coordinator.put_item("users", U1, {"tags": "vip"})
        res = await coordinator.add_elements_to_array("users", U1, "tags", ["x"])
        assert isinstance(res.error, ValidationError)

    @pytest.mark.parametrize(
        "elements",
        [[], ["a", 1], "abc", [{"nested": 1}]],
    )
    async def test_bad_element_batches(self, coordinator, elements):
        res = await coordinator.add_elements_to_array("users", U1, "tags", elements)
        assert isinstance(res.error, ValidationError)

    async def test_key_attribute_cannot_be_targeted(self, coordinator):
        res = await coordinator.add_elements_to_array("users", U1, "id", ["x"])
        assert isinstance(res.error, ValidationError)

    async def test_remove_all_matching_entries(self, coordinator):
        await coordinator.put_item("users", U1, {"tags": ["vip", "beta", "vip", "old"]})
        res = await coordinator.remove_elements_from_array(
            "users",
            U1,
            "tags",
            ["vip", "old"],
            return_behavior=ReturnBehavior.RETURN_NEW_VALUES,
        )
        assert res.value["tags"] == ["beta"]

    async def test_remove_matches_numbers_across_kinds(self, coordinator):
        await coordinator.put_item("users", U1, {"lucky": [7, 11]})
        await coordinator.remove_elements_from_array("users", U1, "lucky", [7.0])
        assert (await coordinator.get_item("users", U1)).value["lucky"] == [11]

    async def test_remove_on_missing_item_or_attribute(self, coordinator):
        res = await coordinator.remove_elements_from_array("users", U1, "tags", ["x"])
        assert res.ok
        assert (await coordinator.get_item("users", U1)).value is None
        await coordinator.put_item("users", U1, {"a": 1})
        res = await coordinator.remove_elements_from_array("users", U1, "tags", ["x"])
        assert res.ok
        assert (await coordinator.get_item("users", U1)).value == {"id": "u1", "a": 1}


class TestIncrement:
    async def test_nested_path(self, coordinator):
        await coordinator.increment_attribute("users", U1, "stats.visits", 1)
        await coordinator.increment_attribute("users", U1, "stats.visits", 1.5)
        doc = (await coordinator.get_item("users", U1)).value
        assert doc["stats"] == {"visits": 2.5}

    async def test_non_numeric_counts_as_zero(self, coordinator):
        await coordinator.put_item("users", U1, {"score": "high"})
        res = await coordinator.increment_attribute("users", U1, "score", 4)
        assert res.value == 4.0

    async def test_with_condition(self, coordinator):
        await coordinator.put_item("users", U1, {"score": 1, "locked": True})
        res = await coordinator.increment_attribute(
            "users", U1, "score", 1, condition=attribute_not_exists("locked")
        )
        assert isinstance(res.error, PreconditionFailedError)
        assert (await coordinator.get_item("users", U1)).value["score"] == 1

    @pytest.mark.parametrize("delta", [float("nan"), float("inf"), True, "1"])
    async def test_rejects_bad_deltas(self, coordinator, delta):
        res = await coordinator.increment_attribute("users", U1, "score", delta)
        assert isinstance(res.error, ValidationError)

    async def test_uses_native_increment_without_condition(self, tmp_path):
        backend = NativeBackend(root=tmp_path)
        hooks = RecordingHooks()
        coord = ConditionalWriteCoordinator(backend, hooks=hooks, retry_delay_s=0.0)
        res = await coord.increment_attribute("users", U1, "score", 1)
        assert res.value == 42.0
        assert backend.increments == [("score",)]
        assert hooks.inserted == [("users", U1)]

    async def test_conditional_increment_skips_native_path(self, tmp_path):
        backend = NativeBackend(root=tmp_path)
        coord = ConditionalWriteCoordinator(backend, retry_delay_s=0.0)
        res = await coord.increment_attribute(
            "users", U1, "score", 1, condition=attribute_not_exists("score")
        )
        assert res.value == 1.0
        assert backend.increments == []


class TestScansAndTables:
    async def test_scan_with_filter(self, coordinator):
        for i in range(4):
            await coordinator.put_item("items", DbKey("id", f"k{i}"), {"n": i})
        res = await coordinator.scan_table_with_filter("items", attribute_greater("n", 1))
        assert [d["n"] for d in res.value] == [2, 3]
        page = await coordinator.scan_table_with_filter_paginated(
            "items", attribute_greater("n", 0), 2
        )
        assert [d["n"] for d in page.value.items] == [1, 2]
        assert page.value.next_cursor is not None

    async def test_scan_table_returns_keys(self, coordinator):
        await coordinator.put_item("items", DbKey("sku", "x1"), {"n": 1})
        res = await coordinator.scan_table("items")
        assert res.value == [{"sku": "x1", "n": 1}]

    @pytest.mark.parametrize("page_size", [0, -1, True])
    async def test_invalid_page_size(self, coordinator, page_size):
        res = await coordinator.scan_table_paginated("items", page_size)
        assert isinstance(res.error, ValidationError)

    async def test_drop_and_list(self, tmp_path):
        hooks = RecordingHooks()
        coord = ConditionalWriteCoordinator(
            LocalFileBackend(root=tmp_path), hooks=hooks, retry_delay_s=0.0
        )
        await coord.put_item("users", U1, {})
        await coord.put_item("hidden", U1, {})
        assert (await coord.list_tables()).value == ["users"]
        assert (await coord.drop_table("users")).ok
        assert hooks.dropped == ["users"]
        assert (await coord.list_tables()).value == []
        assert (await coord.drop_table("never")).ok


class TestValidation:
    @pytest.mark.parametrize("table", ["", "   "])
    async def test_empty_table_name(self, coordinator, table):
        res = await coordinator.put_item(table, U1, {})
        assert isinstance(res.error, ValidationError)

    async def test_non_object_item(self, coordinator):
        not_a_dict: object = ["not", "a", "dict"]
        res = await coordinator.put_item("users", U1, not_a_dict)  # type: ignore[arg-type]
        assert isinstance(res.error, ValidationError)

    async def test_bad_attribute_path(self, coordinator):
        res = await coordinator.add_elements_to_array("users", U1, "a..b", ["x"])
        assert isinstance(res.error, ValidationError)


class TestHooks:
    async def test_insert_notifications(self, tmp_path):
        hooks = RecordingHooks()
        coord = ConditionalWriteCoordinator(
            LocalFileBackend(root=tmp_path), hooks=hooks, retry_delay_s=0.0
        )
        await coord.put_item("users", U1, {"a": 1})
        await coord.update_item("users", U1, {"a": 2})
        await coord.update_item("users", DbKey("id", "u2"), {"a": 1})
        await coord.put_item("users", U1, {"a": 3}, overwrite_if_exists=True)
        assert hooks.inserted == [
            ("users", U1),
            ("users", DbKey("id", "u2")),
            ("users", U1),
        ]

    async def test_sanity_check_rejects_before_writing(self, tmp_path):
        hooks = RecordingHooks(reject={"forbidden"})
        coord = ConditionalWriteCoordinator(
            LocalFileBackend(root=tmp_path), hooks=hooks, retry_delay_s=0.0
        )
        res = await coord.put_item("users", U1, {"forbidden": 1})
        assert isinstance(res.error, ValidationError)
        assert (await coord.get_item("users", U1)).value is None
        assert hooks.inserted == []


class TestRetries:
    async def test_retries_retriable_faults(self, tmp_path):
        backend = FlakyBackend(root=tmp_path, failures=2)
        coord = ConditionalWriteCoordinator(backend, max_attempts=3, retry_delay_s=0.0)
        res = await coord.put_item("users", U1, {"a": 1})
        assert res.ok
        assert backend.write_calls == 3

    async def test_exhausted_retries_report_contention(self, tmp_path):
        backend = FlakyBackend(root=tmp_path, failures=10)
        coord = ConditionalWriteCoordinator(backend, max_attempts=3, retry_delay_s=0.0)
        res = await coord.update_item("users", U1, {"a": 1})
        assert isinstance(res.error, ContentionError)
        assert res.error.attempts == 3
        assert "tried 3 times" in str(res.error)

    async def test_unexpected_faults_become_backend_errors(self, tmp_path):
        class Broken(LocalFileBackend):
            async def get(self, table, key):
                raise RuntimeError("boom")

        coord = ConditionalWriteCoordinator(Broken(root=tmp_path), retry_delay_s=0.0)
        res = await coord.get_item("users", U1)
        assert isinstance(res.error, StorageBackendError)
        assert "boom" in str(res.error)

    async def test_cancellation_propagates(self, tmp_path):
        class Hanging(LocalFileBackend):
            async def get(self, table, key):
                await asyncio.Event().wait()

        coord = ConditionalWriteCoordinator(Hanging(root=tmp_path), retry_delay_s=0.0)
        task = asyncio.create_task(coord.get_item("users", U1))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    def test_max_attempts_must_be_positive(self, backend):
        with pytest.raises(ValueError):
            ConditionalWriteCoordinator(backend, max_attempts=0)
