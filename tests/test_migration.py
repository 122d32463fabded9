"""Tests for copying tables between services."""

from __future__ import annotations

import pytest

from polydoc.config import PolydocConfig
from polydoc.migration import migrate_tables
from polydoc.service import DatabaseService
from polydoc.storage_local import LocalFileBackend
from polydoc.types import DbKey


def _service(root, name: str) -> DatabaseService:
    cfg = PolydocConfig(database_name=name, contention_retry_delay_s=0.0)
    return DatabaseService(LocalFileBackend(root=root, database_name=name), config=cfg)


@pytest.fixture
def source(tmp_path):
    return _service(tmp_path, "source")


@pytest.fixture
def destination(tmp_path):
    return _service(tmp_path, "destination")


async def test_copies_every_table(source, destination):
    for i in range(5):
        await source.put_item("users", DbKey("id", f"u{i}"), {"n": i})
    await source.put_item("orders", DbKey("order_id", 7), {"total": 3.5})

    res = await migrate_tables(source, destination, page_size=2)

    assert res.ok
    assert sorted(res.value.tables) == ["orders", "users"]
    assert res.value.items_copied == 6
    users = (await destination.scan_table("users")).value
    assert [d["n"] for d in users] == [0, 1, 2, 3, 4]
    order = (await destination.get_item("orders", DbKey("order_id", 7))).value
    assert order == {"order_id": 7, "total": 3.5}
    assert (await destination.get_table_keys("orders")).value == ["order_id"]


async def test_overwrites_existing_items(source, destination):
    await source.put_item("users", DbKey("id", "u1"), {"v": "new"})
    await destination.put_item("users", DbKey("id", "u1"), {"v": "old"})
    await migrate_tables(source, destination)
    assert (await destination.get_item("users", DbKey("id", "u1"))).value["v"] == "new"


async def test_cleaning_options(source, destination):
    await source.put_item("users", DbKey("id", "u1"), {})
    await destination.put_item("stale", DbKey("id", "x"), {})

    res = await migrate_tables(
        source, destination, clean_destination_first=True, clean_source_after=True
    )

    assert res.value.dropped_destination_tables == ["stale"]
    assert res.value.dropped_source_tables == ["users"]
    assert (await destination.list_tables()).value == ["users"]
    assert (await source.list_tables()).value == []
