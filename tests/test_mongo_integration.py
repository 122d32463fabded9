"""MongoDB backend integration tests."""

from __future__ import annotations

import asyncio
import os
import uuid

import pytest

from polydoc.config import PolydocConfig
from polydoc.filters import attr
from polydoc.service import DatabaseService
from polydoc.storage import open_service
from polydoc.types import DbKey

pytestmark = pytest.mark.mongo


@pytest.fixture
async def mongo_service():
    if os.getenv("POLYDOC_MONGO_TEST") != "1":
        pytest.skip("MongoDB integration tests disabled (set POLYDOC_MONGO_TEST=1)")

    uri = os.getenv("POLYDOC_MONGO_URI", "mongodb://127.0.0.1:27017")
    cfg = PolydocConfig(
        mongo_database=f"polydoc_it_{uuid.uuid4().hex[:8]}",
        contention_retry_delay_s=0.1,
    )
    svc = open_service(uri, config=cfg)
    yield svc
    for table in await svc.backend.list_tables():
        await svc.backend.drop_table(table)
    svc.close()


async def test_round_trip_and_arrays(mongo_service: DatabaseService) -> None:
    key = DbKey("id", "u1")
    assert (await mongo_service.add_elements_to_array("users", key, "tags", ["vip"])).ok
    assert (await mongo_service.get_item("users", key)).value == {"id": "u1", "tags": ["vip"]}
    res = await mongo_service.add_elements_to_array(
        "users", key, "tags", ["beta"], condition=attr("tags").contains("vip")
    )
    assert res.ok
    await mongo_service.remove_elements_from_array("users", key, "tags", ["vip"])
    assert (await mongo_service.get_item("users", key)).value["tags"] == ["beta"]


async def test_concurrent_increments(mongo_service: DatabaseService) -> None:
    key = DbKey("id", "c1")
    await asyncio.gather(
        *(mongo_service.increment_attribute("counters", key, "n", 1) for _ in range(10))
    )
    assert (await mongo_service.get_item("counters", key)).value["n"] == 10
