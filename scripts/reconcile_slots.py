from __future__ import annotations

import argparse
import asyncio
import json
import sys

from flowforge.core.config import get_settings
from flowforge.core.context import build_context
from flowforge.core.logging import configure_logging
from flowforge.services.allocator import SlotAllocator
from flowforge.services.reconciliation import reconcile_slots


async def _run(*, restore: str | None, note: str | None) -> int:
    configure_logging()
    ctx = build_context(get_settings())
    try:
        if restore:
            slot = await SlotAllocator(ctx).restore_slot(restore, note)
            print(json.dumps(slot.to_dict(), indent=2, sort_keys=True))
            return 0
        report = await reconcile_slots(ctx)
    finally:
        await ctx.aclose()
    print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    # Non-zero when manual review is needed so cron wrappers can alert.
    return 2 if report.quarantined else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile the slot ledger or restore a quarantined slot.")
    parser.add_argument("--restore", metavar="SLOT_ID", default=None)
    parser.add_argument("--note", default=None)
    args = parser.parse_args()
    return asyncio.run(_run(restore=args.restore, note=args.note))


if __name__ == "__main__":
    sys.exit(main())
