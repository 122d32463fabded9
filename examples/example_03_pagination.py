"""Example 03: Scans, Filters and Pagination.

This example demonstrates:
- Full table scans
- Filtered scans evaluated against each item
- Resuming paginated scans with opaque cursors
- Copying tables into another database with migrate_tables()
"""

import asyncio

from polydoc import DbKey, PolydocConfig, attr, migrate_tables, open_service


async def main() -> None:
    """Run the pagination example."""
    print("=" * 80)
    print("POLYDOC PAGINATION EXAMPLE")
    print("=" * 80)

    db = open_service("file://tmp", config=PolydocConfig(database_name="pagination"))
    await db.drop_table("articles")
    categories = ["tech", "science", "culture"]
    for i in range(25):
        await db.put_item(
            "articles",
            DbKey("article_id", f"a{i:03d}"),
            {"category": categories[i % 3], "views": i * 10},
        )

    print(f"\n1. Full scan: {len((await db.scan_table('articles')).value)} articles")

    print("\n2. Pages of 10:")
    cursor = None
    page_number = 1
    while True:
        page = (await db.scan_table_paginated("articles", 10, cursor)).unwrap()
        ids = [item["article_id"] for item in page.items]
        print(f"   page {page_number}: {ids[0]}..{ids[-1]} of {page.total_count}")
        cursor = page.next_cursor
        if cursor is None:
            break
        page_number += 1

    print("\n3. Popular tech articles:")
    popular = (attr("category") == "tech") & (attr("views") > 100)
    matches = (await db.scan_table_with_filter("articles", popular)).value
    print(f"   {[m['article_id'] for m in matches]}")

    print("\n4. Copying into another database:")
    archive = open_service("file://tmp", config=PolydocConfig(database_name="archive"))
    summary = (await migrate_tables(db, archive, clean_destination_first=True)).unwrap()
    print(f"   copied {summary.items_copied} items from {summary.tables}")

    archive.close()
    db.close()
    print("\n" + "=" * 80)
    print("EXAMPLE COMPLETE")
    print("=" * 80)


if __name__ == "__main__":
    asyncio.run(main())
