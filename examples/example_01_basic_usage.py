"""Example 01: Basic Usage - Polydoc Fundamentals.

This example demonstrates the fundamental operations:
- Opening a database service over the local file engine
- Putting, reading and updating items by key
- Reading results through OperationResult
- Listing and dropping tables
"""

import asyncio

from polydoc import DbKey, PolydocConfig, ReturnBehavior, open_service


async def main() -> None:
    """Run the basic usage example."""
    print("=" * 80)
    print("POLYDOC BASIC USAGE EXAMPLE")
    print("=" * 80)

    # Step 1: Open a service
    # A file:// URI selects the local file engine; items become JSON files
    # under tmp/polydoc.local/<database>/<table>/.
    config = PolydocConfig(database_name="basic_usage")
    db = open_service("file://tmp", config=config)
    print("\n✓ Service opened: tmp/polydoc.local/basic_usage")

    # Step 2: Put items
    # The key attribute is kept out of the stored body and re-attached on read.
    print("\n1. Putting users:")
    for user_id, name, age in [("u1", "Ann", 30), ("u2", "Bob", 42), ("u3", "Cid", 25)]:
        result = await db.put_item(
            "users", DbKey("id", user_id), {"name": name, "age": age}, overwrite_if_exists=True
        )
        print(f"   - {user_id}: {result.status.value}")

    # Step 3: Read them back
    print("\n2. Reading u1:")
    ann = await db.get_item("users", DbKey("id", "u1"))
    print(f"   {ann.value}")

    # Step 4: Update with a merge and ask for the new document
    print("\n3. Moving Ann to Oslo:")
    updated = await db.update_item(
        "users",
        DbKey("id", "u1"),
        {"city": "Oslo"},
        return_behavior=ReturnBehavior.RETURN_NEW_VALUES,
    )
    print(f"   {updated.value}")

    # Step 5: Failures are values, not exceptions
    print("\n4. Putting u1 again without overwrite:")
    again = await db.put_item("users", DbKey("id", "u1"), {"name": "Impostor"})
    print(f"   ok={again.ok} error={again.error}")

    # Step 6: Tables
    print("\n5. Tables:")
    print(f"   {(await db.list_tables()).value}")
    print(f"   key names of 'users': {(await db.get_table_keys('users')).value}")
    await db.drop_table("users")
    print(f"   after drop: {(await db.list_tables()).value}")

    db.close()
    print("\n" + "=" * 80)
    print("EXAMPLE COMPLETE")
    print("=" * 80)


if __name__ == "__main__":
    asyncio.run(main())
