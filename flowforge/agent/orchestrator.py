from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any
from uuid import uuid4

from flowforge.agent.graph import run_graph
from flowforge.core.clock import ensure_utc
from flowforge.core.errors import SessionClosedError, SessionNotFoundError
from flowforge.domain.scope import ARCHIVED_PHASES, CLOSED_PHASES, Phase, Role, ScopeDraft
from flowforge.persistence.guards import require_tenant_id
from flowforge.persistence.repos import sessions as sessions_repo
from flowforge.persistence.repos import turns as turns_repo
from flowforge.services.sessions import IDLE_CANCELLED_MESSAGE, cancel_idle_session, release_abandoned_slot


logger = logging.getLogger(__name__)

# Recent turns handed to the question drafter.
HISTORY_WINDOW = 12


@dataclass
class AdvanceResult:
    session_id: str
    phase: str
    turn: dict[str, Any]
    scope: dict[str, Any]
    report: dict[str, Any] | None = None
    workflow_id: str | None = None
    transitions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self.phase,
            "turn": self.turn,
            "scope": self.scope,
            "report": self.report,
            "workflow_id": self.workflow_id,
        }


def _turn_payload(role: str, content: str, metadata: dict[str, Any] | None) -> dict[str, Any]:
    return {"role": role, "content": content, "metadata": dict(metadata or {})}


async def advance(ctx, tenant_id: str, session_id: str | None, message: str) -> AdvanceResult:
    """Process one user message and return the agent's reply.

    Turns for the same session are serialized by an in-process lock; the
    session row's version column catches turns racing from another process
    and surfaces them as ConcurrentTurnError.
    """
    require_tenant_id(tenant_id)
    session_id = session_id or str(uuid4())
    async with ctx.session_locks.lock(session_id):
        return await _advance_locked(ctx, tenant_id, session_id, message or "")


async def _advance_locked(ctx, tenant_id: str, session_id: str, message: str) -> AdvanceResult:
    now = ctx.now()
    idle_limit = timedelta(hours=ctx.settings.session_idle_timeout_hours)

    async with ctx.session_factory() as db:
        row = await sessions_repo.get_tenant_session(db, tenant_id=tenant_id, session_id=session_id)
        if row is None:
            row = await sessions_repo.create_session(
                db,
                session_id=session_id,
                tenant_id=tenant_id,
                phase=Phase.GREETING.value,
                now=now,
            )
            await db.commit()
            logger.info("session_created tenant_id=%s session_id=%s", tenant_id, session_id)

        if Phase(row.phase) in CLOSED_PHASES:
            raise SessionClosedError(f"session {session_id} is {row.phase}")

        if now - ensure_utc(row.last_activity_at) > idle_limit:
            await cancel_idle_session(db, row, now=now, user_message=message)
            await db.commit()
            await release_abandoned_slot(ctx, tenant_id, session_id)
            logger.info("session_expired tenant_id=%s session_id=%s", tenant_id, session_id)
            return AdvanceResult(
                session_id=session_id,
                phase=Phase.CANCELLED.value,
                turn=_turn_payload(
                    Role.AGENT.value,
                    IDLE_CANCELLED_MESSAGE,
                    {"kind": "cancelled", "phase": Phase.CANCELLED.value},
                ),
                scope=ScopeDraft.from_dict(row.scope_json).to_dict(),
                workflow_id=row.workflow_id,
            )

        previous_phase = row.phase
        version = row.version
        stored_transitions = list(row.transitions_json or [])
        stored_workflow_id = row.workflow_id
        turns = await turns_repo.list_turns(db, session_id)
        history = [
            {"role": turn.role, "content": turn.content, "metadata": dict(turn.metadata_json or {})}
            for turn in turns[-HISTORY_WINDOW:]
        ]
        state = {
            "session_id": session_id,
            "tenant_id": tenant_id,
            "user_message": message,
            "phase": previous_phase,
            "scope": dict(row.scope_json or {}),
            "history": history,
            "transitions": [],
            "workflow_id": stored_workflow_id,
        }
        await db.rollback()

    # No database session is held while handlers call the LLM or the engine.
    final = await run_graph(ctx, state)

    phase = Phase(final["phase"])
    reply = final.get("reply") or ""
    reply_metadata = {**(final.get("reply_metadata") or {}), "phase": phase.value}
    transitions = stored_transitions + list(final.get("transitions") or [])
    workflow_id = final.get("workflow_id") or stored_workflow_id

    async with ctx.session_factory() as db:
        await sessions_repo.save_session(
            db,
            session_id=session_id,
            expected_version=version,
            values={
                "phase": phase.value,
                "scope_json": final.get("scope") or {},
                "transitions_json": transitions,
                "workflow_id": workflow_id,
                "last_activity_at": now,
                "archived_at": now if phase in ARCHIVED_PHASES else None,
            },
        )
        seq = await turns_repo.next_seq(db, session_id)
        await turns_repo.add_turn(
            db,
            session_id=session_id,
            seq=seq,
            role=Role.USER.value,
            content=message,
            created_at=now,
            metadata={"phase": previous_phase},
        )
        await turns_repo.add_turn(
            db,
            session_id=session_id,
            seq=seq + 1,
            role=Role.AGENT.value,
            content=reply,
            created_at=now,
            metadata=reply_metadata,
        )
        await db.commit()

    logger.info(
        "turn_processed tenant_id=%s session_id=%s from=%s to=%s kind=%s",
        tenant_id,
        session_id,
        previous_phase,
        phase.value,
        reply_metadata.get("kind"),
    )
    return AdvanceResult(
        session_id=session_id,
        phase=phase.value,
        turn=_turn_payload(Role.AGENT.value, reply, reply_metadata),
        scope=final.get("scope") or {},
        report=final.get("report"),
        workflow_id=workflow_id,
        transitions=transitions,
    )


async def get_conversation(ctx, tenant_id: str, session_id: str) -> dict[str, Any]:
    require_tenant_id(tenant_id)
    async with ctx.session_factory() as db:
        row = await sessions_repo.get_tenant_session(db, tenant_id=tenant_id, session_id=session_id)
        if row is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        turns = await turns_repo.list_turns(db, session_id)
        archived_at = ensure_utc(row.archived_at)
        payload = {
            "session_id": row.id,
            "tenant_id": row.tenant_id,
            "phase": row.phase,
            "scope": ScopeDraft.from_dict(row.scope_json).to_dict(),
            "transitions": list(row.transitions_json or []),
            "workflow_id": row.workflow_id,
            "last_activity_at": ensure_utc(row.last_activity_at).isoformat(),
            "archived_at": archived_at.isoformat() if archived_at else None,
            "turns": [
                {
                    "seq": turn.seq,
                    "role": turn.role,
                    "content": turn.content,
                    "metadata": dict(turn.metadata_json or {}),
                    "created_at": ensure_utc(turn.created_at).isoformat(),
                }
                for turn in turns
            ],
        }
        await db.rollback()
    return payload
