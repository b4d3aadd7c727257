from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from flowforge.agent.orchestrator import advance, get_conversation
from flowforge.apps.api.deps import get_context, get_tenant_id, reject_tenant_id_in_body
from flowforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES, ENGINE_ERROR_RESPONSES
from flowforge.apps.api.response import SuccessEnvelope, success_response
from flowforge.core.context import AutomationContext

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/conversations",
    tags=["conversations"],
    responses={**DEFAULT_ERROR_RESPONSES, **ENGINE_ERROR_RESPONSES},
)


class MessageRequest(BaseModel):
    session_id: str | None = Field(default=None, min_length=1, max_length=128)
    message: str = Field(max_length=4000)


class TurnPayload(BaseModel):
    role: str
    content: str
    metadata: dict[str, Any]


class AdvanceResponse(BaseModel):
    session_id: str
    phase: str
    turn: TurnPayload
    scope: dict[str, Any]
    report: dict[str, Any] | None = None
    workflow_id: str | None = None


@router.post(
    "/messages",
    response_model=SuccessEnvelope[AdvanceResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def post_message(
    request: Request,
    payload: MessageRequest,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    result = await advance(ctx, tenant_id, payload.session_id, payload.message)
    return success_response(request=request, data=AdvanceResponse(**result.to_dict()))


@router.get("/{session_id}")
async def read_conversation(
    session_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    conversation = await get_conversation(ctx, tenant_id, session_id)
    return success_response(request=request, data=conversation)
