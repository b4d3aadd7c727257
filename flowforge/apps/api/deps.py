from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from flowforge.core.context import AutomationContext


def get_context(request: Request) -> AutomationContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Application context is not initialized"},
        )
    return context


def get_tenant_id(request: Request, ctx: AutomationContext = Depends(get_context)) -> str:
    # Tenant identity is asserted by the upstream gateway and trusted as-is.
    tenant_id = (request.headers.get(ctx.settings.tenant_header) or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "TENANT_REQUIRED",
                "message": f"{ctx.settings.tenant_header} header is required",
            },
        )
    return tenant_id


def _admin_tenants(ctx: AutomationContext) -> set[str]:
    return {item.strip() for item in ctx.settings.admin_tenant_ids.split(",") if item.strip()}


def require_admin(
    tenant_id: str = Depends(get_tenant_id),
    ctx: AutomationContext = Depends(get_context),
) -> str:
    if tenant_id not in _admin_tenants(ctx):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Operator access required"},
        )
    return tenant_id


async def reject_tenant_id_in_body(request: Request) -> None:
    # tenant_id comes from the header only; a body field would be silently ignored otherwise.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and "tenant_id" in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "TENANT_ID_NOT_ALLOWED",
                "message": "tenant_id must be supplied through the tenant header",
            },
        )
