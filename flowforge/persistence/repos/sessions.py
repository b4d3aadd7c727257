from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowforge.core.errors import ConcurrentTurnError, SessionTenantMismatchError
from flowforge.domain.models import ConversationSession
from flowforge.persistence.guards import require_tenant_id, tenant_predicate


async def get_session_by_id(session: AsyncSession, session_id: str) -> ConversationSession | None:
    result = await session.execute(select(ConversationSession).where(ConversationSession.id == session_id))
    return result.scalar_one_or_none()


async def get_tenant_session(
    session: AsyncSession, *, tenant_id: str, session_id: str
) -> ConversationSession | None:
    require_tenant_id(tenant_id)
    existing = await get_session_by_id(session, session_id)
    if existing is None:
        return None
    # Security invariant: a session id never crosses tenants.
    if existing.tenant_id != tenant_id:
        raise SessionTenantMismatchError("session tenant_id does not match")
    return existing


async def create_session(
    session: AsyncSession,
    *,
    session_id: str,
    tenant_id: str,
    phase: str,
    now: datetime,
) -> ConversationSession:
    row = ConversationSession(
        id=session_id,
        tenant_id=tenant_id,
        phase=phase,
        scope_json={},
        transitions_json=[],
        version=0,
        created_at=now,
        last_activity_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def save_session(
    session: AsyncSession,
    *,
    session_id: str,
    expected_version: int,
    values: dict[str, Any],
) -> int:
    # Compare-and-swap on version so two processes cannot interleave turns.
    next_version = expected_version + 1
    result = await session.execute(
        update(ConversationSession)
        .where(
            ConversationSession.id == session_id,
            ConversationSession.version == expected_version,
        )
        .values(version=next_version, **values)
    )
    if result.rowcount != 1:
        raise ConcurrentTurnError(f"session {session_id} was modified concurrently")
    return next_version


async def list_idle_sessions(
    session: AsyncSession, *, idle_before: datetime, open_phases: list[str], limit: int = 500
) -> list[ConversationSession]:
    result = await session.execute(
        select(ConversationSession)
        .where(
            ConversationSession.last_activity_at < idle_before,
            ConversationSession.phase.in_(open_phases),
        )
        .order_by(ConversationSession.last_activity_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_tenant_sessions(
    session: AsyncSession, tenant_id: str, *, limit: int = 20
) -> list[ConversationSession]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(ConversationSession)
        .where(tenant_predicate(ConversationSession, tenant_id))
        .order_by(ConversationSession.last_activity_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
