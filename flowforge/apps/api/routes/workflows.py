from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from flowforge.apps.api.deps import get_context, get_tenant_id, reject_tenant_id_in_body
from flowforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES, ENGINE_ERROR_RESPONSES
from flowforge.apps.api.response import success_response
from flowforge.core.context import AutomationContext
from flowforge.services.deployment import DeploymentCoordinator

router = APIRouter(
    prefix="/workflows",
    tags=["workflows"],
    responses={**DEFAULT_ERROR_RESPONSES, **ENGINE_ERROR_RESPONSES},
)


class ActivateRequest(BaseModel):
    active: bool = True


class ExecuteRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


@router.get("")
async def list_workflows(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    views = await DeploymentCoordinator(ctx).list_workflows(tenant_id)
    return success_response(request=request, data=[view.to_dict() for view in views])


@router.get("/{workflow_id}")
async def read_workflow(
    workflow_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    status = await DeploymentCoordinator(ctx).workflow_status(tenant_id, workflow_id)
    return success_response(request=request, data=status)


@router.post("/{workflow_id}/activate", dependencies=[Depends(reject_tenant_id_in_body)])
async def activate_workflow(
    workflow_id: str,
    request: Request,
    payload: ActivateRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    active = payload.active if payload is not None else True
    result = await DeploymentCoordinator(ctx).activate(tenant_id, workflow_id, active)
    return success_response(request=request, data=result)


@router.post("/{workflow_id}/execute", dependencies=[Depends(reject_tenant_id_in_body)])
async def execute_workflow(
    workflow_id: str,
    request: Request,
    payload: ExecuteRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    body = payload.payload if payload is not None else {}
    result = await DeploymentCoordinator(ctx).execute(tenant_id, workflow_id, body)
    return success_response(request=request, data=result)


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> dict:
    result = await DeploymentCoordinator(ctx).teardown(tenant_id, workflow_id)
    return success_response(request=request, data=result)
