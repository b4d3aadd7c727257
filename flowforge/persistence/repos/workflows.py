from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowforge.domain.models import Workflow
from flowforge.persistence.guards import require_tenant_id, tenant_predicate


async def create_workflow(
    session: AsyncSession,
    *,
    workflow_id: str,
    tenant_id: str,
    slot_id: str,
    session_id: str | None,
    name: str,
    definition: dict[str, Any],
    now: datetime,
) -> Workflow:
    workflow = Workflow(
        id=workflow_id,
        tenant_id=tenant_id,
        slot_id=slot_id,
        session_id=session_id,
        name=name,
        definition_json=definition,
        deployment_status="pending",
        created_at=now,
        updated_at=now,
    )
    session.add(workflow)
    return workflow


async def get_workflow(session: AsyncSession, *, tenant_id: str, workflow_id: str) -> Workflow | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Workflow).where(Workflow.id == workflow_id, tenant_predicate(Workflow, tenant_id))
    )
    return result.scalar_one_or_none()


async def list_tenant_workflows(session: AsyncSession, tenant_id: str) -> list[Workflow]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Workflow).where(tenant_predicate(Workflow, tenant_id)).order_by(Workflow.created_at.asc())
    )
    return list(result.scalars().all())


async def list_slot_workflows(session: AsyncSession, slot_id: str) -> list[Workflow]:
    result = await session.execute(select(Workflow).where(Workflow.slot_id == slot_id))
    return list(result.scalars().all())


async def count_slot_workflows(session: AsyncSession, slot_id: str) -> int:
    result = await session.execute(select(func.count(Workflow.id)).where(Workflow.slot_id == slot_id))
    return int(result.scalar_one())


async def count_tenant_workflows(session: AsyncSession, tenant_id: str) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(func.count(Workflow.id)).where(tenant_predicate(Workflow, tenant_id))
    )
    return int(result.scalar_one())


async def mark_status(
    session: AsyncSession,
    *,
    workflow_id: str,
    status: str,
    now: datetime,
    engine_workflow_id: str | None = None,
    last_error: str | None = None,
) -> None:
    values: dict[str, Any] = {"deployment_status": status, "updated_at": now, "last_error": last_error}
    if engine_workflow_id is not None:
        values["engine_workflow_id"] = engine_workflow_id
    await session.execute(update(Workflow).where(Workflow.id == workflow_id).values(**values))


async def delete_workflow(session: AsyncSession, workflow_id: str) -> None:
    await session.execute(delete(Workflow).where(Workflow.id == workflow_id))


async def delete_failed_for_session(session: AsyncSession, *, tenant_id: str, session_id: str) -> int:
    # A new attempt from the same conversation supersedes its failed predecessors.
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(Workflow).where(
            tenant_predicate(Workflow, tenant_id),
            Workflow.session_id == session_id,
            Workflow.deployment_status == "failed",
        )
    )
    return int(result.rowcount or 0)
