from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Any
import weakref

from flowforge.core.clock import ensure_utc
from flowforge.core.errors import ConcurrentTurnError
from flowforge.domain.scope import Phase, Role
from flowforge.persistence.repos import sessions as sessions_repo
from flowforge.persistence.repos import turns as turns_repo
from flowforge.persistence.repos import workflows as workflows_repo
from flowforge.services.deployment import DeploymentCoordinator


logger = logging.getLogger(__name__)

IDLE_CANCELLED_MESSAGE = (
    "This conversation was closed after a long period of inactivity. "
    "Start a new conversation whenever you want to continue."
)
# Phases the idle sweep may cancel; completed/cancelled are already closed.
EXPIRABLE_PHASES = (
    Phase.GREETING.value,
    Phase.SCOPING.value,
    Phase.VALIDATING.value,
    Phase.CREATING.value,
    Phase.FAILED.value,
)


class SessionLockRegistry:
    """Per-session asyncio locks; entries vanish once no turn holds them."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def transition_entry(from_phase: str, to_phase: str, at: datetime, reason: str) -> dict[str, Any]:
    return {"from": from_phase, "to": to_phase, "at": at.isoformat(), "reason": reason}


def idle_cutoff(ctx) -> datetime:
    return ctx.now() - timedelta(hours=ctx.settings.session_idle_timeout_hours)


async def cancel_idle_session(db, row, *, now: datetime, user_message: str | None = None) -> int:
    """Move one idle session to cancelled and append the notice turn; caller commits."""
    transitions = list(row.transitions_json or [])
    transitions.append(transition_entry(row.phase, Phase.CANCELLED.value, now, "inactivity_timeout"))
    version = await sessions_repo.save_session(
        db,
        session_id=row.id,
        expected_version=row.version,
        values={
            "phase": Phase.CANCELLED.value,
            "transitions_json": transitions,
            "archived_at": now,
        },
    )
    seq = await turns_repo.next_seq(db, row.id)
    if user_message is not None:
        await turns_repo.add_turn(
            db,
            session_id=row.id,
            seq=seq,
            role=Role.USER.value,
            content=user_message,
            created_at=now,
        )
        seq += 1
    await turns_repo.add_turn(
        db,
        session_id=row.id,
        seq=seq,
        role=Role.AGENT.value,
        content=IDLE_CANCELLED_MESSAGE,
        created_at=now,
        metadata={"kind": "cancelled", "phase": Phase.CANCELLED.value},
    )
    return version


async def release_abandoned_slot(ctx, tenant_id: str, session_id: str) -> bool:
    """Drop failed rows left by a cancelled session and free the slot if nothing else uses it."""
    async with ctx.session_factory() as db:
        dropped = await workflows_repo.delete_failed_for_session(db, tenant_id=tenant_id, session_id=session_id)
        await db.commit()
    _, released = await DeploymentCoordinator(ctx).release_unused_slot(tenant_id)
    if released is not None:
        logger.info(
            "slot_released_on_cancel tenant_id=%s session_id=%s slot_id=%s failed_rows=%s",
            tenant_id,
            session_id,
            released.id,
            dropped,
        )
    return released is not None


async def expire_idle_sessions(ctx, *, limit: int = 500) -> int:
    cutoff = idle_cutoff(ctx)
    async with ctx.session_factory() as db:
        idle = await sessions_repo.list_idle_sessions(
            db, idle_before=cutoff, open_phases=list(EXPIRABLE_PHASES), limit=limit
        )
        candidates = [row.id for row in idle]
        await db.rollback()

    expired = 0
    for session_id in candidates:
        async with ctx.session_locks.lock(session_id):
            now = ctx.now()
            async with ctx.session_factory() as db:
                row = await sessions_repo.get_session_by_id(db, session_id)
                # Re-check under the lock; a turn may have landed since the scan.
                if row is None or row.phase not in EXPIRABLE_PHASES or row.last_activity_at is None:
                    await db.rollback()
                    continue
                if ensure_utc(row.last_activity_at) >= cutoff:
                    await db.rollback()
                    continue
                tenant_id = row.tenant_id
                try:
                    await cancel_idle_session(db, row, now=now)
                    await db.commit()
                except ConcurrentTurnError:
                    await db.rollback()
                    logger.info("session_expiry_skipped session_id=%s", session_id)
                    continue
            await release_abandoned_slot(ctx, tenant_id, session_id)
            expired += 1
            logger.info("session_expired session_id=%s", session_id)
    return expired
