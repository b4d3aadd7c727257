from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from flowforge.apps.api.deps import get_context, require_admin
from flowforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowforge.apps.api.response import success_response
from flowforge.core.context import AutomationContext
from flowforge.domain.scope import SlotStatus
from flowforge.services.allocator import SlotAllocator
from flowforge.services.reconciliation import reconcile_slots
from flowforge.services.sessions import expire_idle_sessions

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class RestoreRequest(BaseModel):
    note: str | None = Field(default=None, max_length=500)


@router.get("/slots")
async def pool_overview(
    request: Request,
    status: SlotStatus | None = Query(default=None),
    _operator: str = Depends(require_admin),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    allocator = SlotAllocator(ctx)
    slots = await allocator.list_slots(status=status.value if status else None)
    return success_response(
        request=request,
        data={
            "summary": await allocator.pool_status(),
            "slots": [slot.to_dict() for slot in slots],
        },
    )


@router.post("/slots/bootstrap")
async def bootstrap_pool(
    request: Request,
    _operator: str = Depends(require_admin),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    created = await SlotAllocator(ctx).bootstrap_pool()
    return success_response(request=request, data={"created": created})


@router.post("/slots/reconcile")
async def run_reconciliation(
    request: Request,
    operator: str = Depends(require_admin),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    report = await reconcile_slots(ctx)
    logger.info("reconciliation_requested operator=%s", operator)
    return success_response(request=request, data=report.to_dict())


@router.post("/slots/{slot_id}/restore")
async def restore_slot(
    slot_id: str,
    request: Request,
    payload: RestoreRequest | None = None,
    operator: str = Depends(require_admin),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    note = payload.note if payload is not None else None
    slot = await SlotAllocator(ctx).restore_slot(slot_id, note or f"restored by {operator}")
    return success_response(request=request, data=slot.to_dict())


@router.get("/slots/{slot_id}/audit")
async def slot_audit(
    slot_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    _operator: str = Depends(require_admin),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    entries = await SlotAllocator(ctx).audit_trail(slot_id, limit=limit)
    return success_response(request=request, data=entries)


@router.post("/sessions/expire")
async def expire_sessions(
    request: Request,
    _operator: str = Depends(require_admin),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    expired = await expire_idle_sessions(ctx)
    return success_response(request=request, data={"expired": expired})
