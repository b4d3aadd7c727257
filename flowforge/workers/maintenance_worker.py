from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from flowforge.core.config import get_settings
from flowforge.core.context import build_context
from flowforge.core.logging import configure_logging
from flowforge.services.reconciliation import reconcile_slots
from flowforge.services.sessions import expire_idle_sessions

logger = logging.getLogger(__name__)


async def reconcile_slot_pool(ctx) -> dict:
    report = await reconcile_slots(ctx["automation"])
    return report.to_dict()


async def expire_sessions(ctx) -> int:
    expired = await expire_idle_sessions(ctx["automation"])
    if expired:
        logger.info("idle_sessions_expired count=%s", expired)
    return expired


async def _startup(ctx) -> None:
    # One context per worker process; jobs share its engine client and DB pool.
    configure_logging()
    ctx["automation"] = build_context(get_settings())


async def _shutdown(ctx) -> None:
    automation = ctx.get("automation")
    if automation is not None:
        await automation.aclose()


def _reconcile_minutes(interval: int) -> set[int]:
    step = min(60, max(1, int(interval)))
    return set(range(0, 60, step))


class WorkerSettings:
    # Class attributes so `arq flowforge.workers.maintenance_worker.WorkerSettings` picks them up.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    functions = [reconcile_slot_pool, expire_sessions]
    cron_jobs = [
        cron(reconcile_slot_pool, minute=_reconcile_minutes(settings.reconcile_interval_minutes), run_at_startup=True),
        cron(expire_sessions, minute={5}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
