"""DynamoDB backend integration tests (DynamoDB Local compatible)."""

from __future__ import annotations

import os
import uuid

import pytest

from polydoc.config import PolydocConfig
from polydoc.filters import attribute_equals
from polydoc.service import DatabaseService
from polydoc.storage import open_service
from polydoc.types import DbKey

pytestmark = pytest.mark.dynamodb


@pytest.fixture
async def dynamo_service():
    if os.getenv("POLYDOC_DYNAMODB_TEST") != "1":
        pytest.skip("DynamoDB integration tests disabled (set POLYDOC_DYNAMODB_TEST=1)")

    endpoint = os.getenv("POLYDOC_DYNAMODB_ENDPOINT", "http://127.0.0.1:8000")
    region = os.getenv("POLYDOC_DYNAMODB_REGION", "us-east-1")
    cfg = PolydocConfig(
        database_name=f"it{uuid.uuid4().hex[:8]}",
        contention_retry_delay_s=0.1,
    )
    svc = open_service(f"dynamodb://{region}?endpoint={endpoint}", config=cfg)
    yield svc
    for table in await svc.backend.list_tables():
        await svc.backend.drop_table(table)
    svc.close()


async def test_scenarios(dynamo_service: DatabaseService) -> None:
    key = DbKey("id", "u1")
    assert (await dynamo_service.put_item("users", key, {"name": "Ann", "age": 30})).ok
    got = await dynamo_service.get_item("users", key)
    assert got.value == {"id": "u1", "name": "Ann", "age": 30}

    await dynamo_service.update_item("users", key, {"age": 31})
    res = await dynamo_service.update_item(
        "users", key, {"age": 99}, condition=attribute_equals("age", 30)
    )
    assert not res.ok
    assert (await dynamo_service.get_item("users", key)).value["age"] == 31

    counter = DbKey("id", "c1")
    assert (await dynamo_service.increment_attribute("counters", counter, "n", 5)).value == 5.0
    assert (await dynamo_service.increment_attribute("counters", counter, "n", -2)).value == 3.0


async def test_pagination(dynamo_service: DatabaseService) -> None:
    for name in ("a", "b", "c"):
        await dynamo_service.put_item("items", DbKey("id", name), {"n": name})
    seen: list[str] = []
    cursor = None
    while True:
        page = (await dynamo_service.scan_table_paginated("items", 2, cursor)).unwrap()
        seen.extend(d["id"] for d in page.items)
        cursor = page.next_cursor
        if cursor is None:
            break
    assert sorted(seen) == ["a", "b", "c"]
