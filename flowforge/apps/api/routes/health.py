from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from flowforge.apps.api.deps import get_context
from flowforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowforge.apps.api.response import SuccessEnvelope, success_response
from flowforge.core.context import AutomationContext
from flowforge.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

# Latency window reported for engine and LLM calls.
_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str
    engine_configured: bool
    llm_configured: bool
    integrations: dict[str, dict[str, Any]]
    counters: dict[str, int]
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, ctx: AutomationContext = Depends(get_context)) -> dict:
    payload = HealthResponse(
        status="ok",
        engine_configured=ctx.engine_client is not None,
        llm_configured=ctx.llm is not None,
        integrations=ctx.telemetry.external_latency_by_integration(_WINDOW_S),
        counters=ctx.telemetry.counters_snapshot(),
        db_pool=pool_stats(ctx.db_engine),
    )
    return success_response(request=request, data=payload)
