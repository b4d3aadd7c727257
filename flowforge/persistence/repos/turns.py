from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowforge.domain.models import ConversationTurn


async def next_seq(session: AsyncSession, session_id: str) -> int:
    result = await session.execute(
        select(func.max(ConversationTurn.seq)).where(ConversationTurn.session_id == session_id)
    )
    current = result.scalar_one_or_none()
    return int(current or 0) + 1


async def add_turn(
    session: AsyncSession,
    *,
    session_id: str,
    seq: int,
    role: str,
    content: str,
    created_at: datetime,
    metadata: dict[str, Any] | None = None,
) -> ConversationTurn:
    turn = ConversationTurn(
        session_id=session_id,
        seq=seq,
        role=role,
        content=content,
        metadata_json=metadata or {},
        created_at=created_at,
    )
    session.add(turn)
    return turn


async def list_turns(session: AsyncSession, session_id: str) -> list[ConversationTurn]:
    result = await session.execute(
        select(ConversationTurn)
        .where(ConversationTurn.session_id == session_id)
        .order_by(ConversationTurn.seq.asc())
    )
    return list(result.scalars().all())
