"""Example 02: Conditional Writes, Arrays and Counters.

This example demonstrates:
- Building condition trees with attr() and the builder functions
- Precondition failures leaving items untouched
- Adding and removing array elements
- Atomic increments under concurrency
"""

import asyncio

from polydoc import (
    DbKey,
    PolydocConfig,
    PreconditionFailedError,
    array_element_not_exists,
    attr,
    attribute_equals,
    open_service,
)


async def main() -> None:
    """Run the conditional writes example."""
    print("=" * 80)
    print("POLYDOC CONDITIONAL WRITES EXAMPLE")
    print("=" * 80)

    db = open_service("file://tmp", config=PolydocConfig(database_name="conditional_writes"))
    key = DbKey("id", "u1")
    await db.drop_table("users")
    await db.put_item("users", key, {"name": "Ann", "age": 30})

    # Optimistic update: only bump the age if nobody else changed it.
    print("\n1. Conditional updates:")
    first = await db.update_item("users", key, {"age": 31}, condition=attribute_equals("age", 30))
    print(f"   age 30 -> 31: ok={first.ok}")
    stale = await db.update_item("users", key, {"age": 99}, condition=attribute_equals("age", 30))
    rejected = isinstance(stale.error, PreconditionFailedError)
    print(f"   stale writer rejected: {rejected}")

    # Arrays: add only when the element is not there yet.
    print("\n2. Arrays:")
    for tag in ["vip", "beta", "vip"]:
        res = await db.add_elements_to_array(
            "users", key, "tags", [tag], condition=array_element_not_exists("tags", tag)
        )
        print(f"   add {tag!r}: ok={res.ok}")
    await db.remove_elements_from_array("users", key, "tags", ["beta"])
    print(f"   tags now: {(await db.get_item('users', key)).value['tags']}")

    # Compound conditions with the attribute proxy.
    print("\n3. Compound condition:")
    cond = (attr("age") >= 18) & attr("tags").contains("vip") & (attr("tags").size() == 1)
    print(f"   adult VIP with one tag: {(await db.item_exists('users', key, cond)).ok}")

    # Counters: concurrent increments on one item are serialized per table.
    print("\n4. Counters:")
    results = await asyncio.gather(
        *(db.increment_attribute("users", key, "stats.logins", 1) for _ in range(10))
    )
    print(f"   last value: {max(r.value for r in results)}")

    db.close()
    print("\n" + "=" * 80)
    print("EXAMPLE COMPLETE")
    print("=" * 80)


if __name__ == "__main__":
    asyncio.run(main())
