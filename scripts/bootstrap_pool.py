from __future__ import annotations

import argparse
import asyncio
import json
import sys

from flowforge.core.config import get_settings
from flowforge.core.context import build_context
from flowforge.core.logging import configure_logging
from flowforge.persistence.db import create_schema
from flowforge.services.allocator import SlotAllocator


async def _run(*, create_tables: bool) -> int:
    configure_logging()
    ctx = build_context(get_settings())
    try:
        if create_tables:
            # Local SQLite setups only; Postgres schemas come from Alembic.
            await create_schema(ctx.db_engine)
        allocator = SlotAllocator(ctx)
        created = await allocator.bootstrap_pool()
        status = await allocator.pool_status()
    finally:
        await ctx.aclose()
    print(json.dumps({"created": created, "pool": status}, indent=2, sort_keys=True))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the project x slot pool (idempotent).")
    parser.add_argument("--create-schema", action="store_true", help="create tables before seeding")
    args = parser.parse_args()
    return asyncio.run(_run(create_tables=args.create_schema))


if __name__ == "__main__":
    sys.exit(main())
