from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from flowforge.apps.api.deps import get_context, get_tenant_id
from flowforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowforge.apps.api.response import success_response
from flowforge.core.context import AutomationContext
from flowforge.services.allocator import SlotAllocator

router = APIRouter(prefix="/slots", tags=["slots"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/me")
async def my_slot(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    # A tenant without a slot gets null rather than 404; holding no slot is a normal state.
    slot = await SlotAllocator(ctx).get_tenant_slot(tenant_id)
    return success_response(request=request, data=slot.to_dict() if slot is not None else None)
