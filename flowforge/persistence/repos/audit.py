from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowforge.domain.models import SlotAuditEntry


async def append_entry(
    session: AsyncSession,
    *,
    slot_id: str,
    tenant_id: str | None,
    action: str,
    details: str | None,
    now: datetime,
) -> SlotAuditEntry:
    # Append-only ledger; rows are never updated or deleted.
    entry = SlotAuditEntry(
        slot_id=slot_id,
        tenant_id=tenant_id,
        action=action,
        details=details,
        created_at=now,
    )
    session.add(entry)
    return entry


async def latest_assignment_entry(session: AsyncSession, slot_id: str) -> SlotAuditEntry | None:
    # Only assigned/unassigned rows describe ownership; warnings and verifications are notes.
    result = await session.execute(
        select(SlotAuditEntry)
        .where(
            SlotAuditEntry.slot_id == slot_id,
            SlotAuditEntry.action.in_(["assigned", "unassigned"]),
        )
        .order_by(SlotAuditEntry.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_entries(
    session: AsyncSession,
    *,
    slot_id: str | None = None,
    tenant_id: str | None = None,
    action: str | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[SlotAuditEntry]:
    stmt = select(SlotAuditEntry)
    if slot_id:
        stmt = stmt.where(SlotAuditEntry.slot_id == slot_id)
    if tenant_id:
        stmt = stmt.where(SlotAuditEntry.tenant_id == tenant_id)
    if action:
        stmt = stmt.where(SlotAuditEntry.action == action)
    stmt = stmt.order_by(SlotAuditEntry.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
