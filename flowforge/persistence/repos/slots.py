from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowforge.domain.models import Slot, SlotMetadata, SlotMetadataArchive
from flowforge.persistence.guards import require_tenant_id


def slot_tag(project_number: int, user_slot: int) -> str:
    return f"p{project_number:02d}-s{user_slot:02d}"


async def ensure_pool(session: AsyncSession, *, project_count: int, slots_per_project: int) -> int:
    # Idempotent bootstrap: only missing matrix cells are inserted.
    result = await session.execute(select(Slot.id))
    existing = set(result.scalars().all())
    created = 0
    for project_number in range(1, project_count + 1):
        for user_slot in range(1, slots_per_project + 1):
            tag = slot_tag(project_number, user_slot)
            if tag in existing:
                continue
            session.add(
                Slot(
                    id=tag,
                    project_number=project_number,
                    user_slot=user_slot,
                    status="available",
                    version=0,
                )
            )
            created += 1
    return created


async def get_slot(session: AsyncSession, slot_id: str) -> Slot | None:
    result = await session.execute(select(Slot).where(Slot.id == slot_id))
    return result.scalar_one_or_none()


async def get_active_slot_for_tenant(session: AsyncSession, tenant_id: str) -> Slot | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Slot).where(Slot.assigned_tenant_id == tenant_id, Slot.status == "active")
    )
    return result.scalar_one_or_none()


async def list_slots(session: AsyncSession, *, status: str | None = None) -> list[Slot]:
    stmt = select(Slot)
    if status:
        stmt = stmt.where(Slot.status == status)
    stmt = stmt.order_by(Slot.project_number.asc(), Slot.user_slot.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def active_counts_by_project(session: AsyncSession) -> dict[int, int]:
    result = await session.execute(
        select(Slot.project_number, func.count(Slot.id))
        .where(Slot.status == "active")
        .group_by(Slot.project_number)
    )
    return {int(project): int(count) for project, count in result.all()}


async def claim_slot(
    session: AsyncSession,
    *,
    slot_id: str,
    expected_version: int,
    tenant_id: str,
    metadata_hash: str,
    now: datetime,
    note: str | None = None,
) -> bool:
    # Compare-and-swap: only an available slot at the version we verified can be claimed.
    result = await session.execute(
        update(Slot)
        .where(
            Slot.id == slot_id,
            Slot.status == "available",
            Slot.version == expected_version,
        )
        .values(
            status="active",
            assigned_tenant_id=tenant_id,
            assigned_at=now,
            metadata_hash=metadata_hash,
            version=expected_version + 1,
            note=note,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def vacate_slot(
    session: AsyncSession,
    *,
    slot_id: str,
    expected_version: int,
    now: datetime,
    status: str = "available",
    note: str | None = None,
) -> bool:
    result = await session.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.version == expected_version)
        .values(
            status=status,
            assigned_tenant_id=None,
            assigned_at=None,
            metadata_hash=None,
            version=expected_version + 1,
            note=note,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def get_metadata(session: AsyncSession, slot_id: str) -> SlotMetadata | None:
    result = await session.execute(select(SlotMetadata).where(SlotMetadata.slot_id == slot_id))
    return result.scalar_one_or_none()


async def write_metadata(
    session: AsyncSession,
    *,
    slot_id: str,
    tenant_id: str,
    metadata_hash: str,
    payload: dict[str, Any],
    now: datetime,
) -> SlotMetadata:
    record = SlotMetadata(
        slot_id=slot_id,
        tenant_id=tenant_id,
        metadata_hash=metadata_hash,
        payload_json=payload,
        created_at=now,
    )
    session.add(record)
    await session.flush()
    return record


async def archive_metadata(session: AsyncSession, *, slot_id: str, reason: str, now: datetime) -> bool:
    # Metadata is moved, never erased.
    record = await get_metadata(session, slot_id)
    if record is None:
        return False
    session.add(
        SlotMetadataArchive(
            slot_id=record.slot_id,
            tenant_id=record.tenant_id,
            metadata_hash=record.metadata_hash,
            payload_json=dict(record.payload_json or {}),
            reason=reason,
            created_at=record.created_at,
            archived_at=now,
        )
    )
    await session.execute(delete(SlotMetadata).where(SlotMetadata.slot_id == slot_id))
    return True
