from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
import re
from typing import Any, Awaitable, Callable
from uuid import uuid4

from flowforge.core.clock import ensure_utc
from flowforge.core.errors import (
    DeploymentFailed,
    EngineTransientError,
    EngineValidationError,
    ValidationError,
    WorkflowNotDeployedError,
    WorkflowNotFoundError,
)
from flowforge.domain.models import Workflow
from flowforge.domain.scope import DeploymentStatus, FeasibilityReport, ScopeDraft
from flowforge.persistence.guards import require_tenant_id
from flowforge.persistence.repos import workflows as workflows_repo
from flowforge.services.allocator import SlotAllocator, SlotView
from flowforge.services.resilience import engine_retry_policy, retry_async


logger = logging.getLogger(__name__)

_NAME_PREFIX_RE = re.compile(r"^\[(?P<tenant>[^\]]+)\]\s")
# Node order inside a compiled workflow.
_NODE_ORDER = ("trigger", "data_sources", "conditions", "actions", "outputs")


def workflow_name(tenant_id: str, title: str) -> str:
    return f"[{tenant_id}] {title}"


def tenant_from_workflow_name(name: str) -> str | None:
    match = _NAME_PREFIX_RE.match(name)
    return match.group("tenant") if match else None


@dataclass(frozen=True)
class WorkflowView:
    id: str
    tenant_id: str
    slot_id: str
    session_id: str | None
    name: str
    deployment_status: str
    engine_workflow_id: str | None
    last_error: str | None
    definition: dict[str, Any]
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def of(cls, workflow: Workflow) -> "WorkflowView":
        return cls(
            id=workflow.id,
            tenant_id=workflow.tenant_id,
            slot_id=workflow.slot_id,
            session_id=workflow.session_id,
            name=workflow.name,
            deployment_status=workflow.deployment_status,
            engine_workflow_id=workflow.engine_workflow_id,
            last_error=workflow.last_error,
            definition=dict(workflow.definition_json or {}),
            created_at=ensure_utc(workflow.created_at),
            updated_at=ensure_utc(workflow.updated_at),
        )

    def to_dict(self, *, include_definition: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "slot_id": self.slot_id,
            "session_id": self.session_id,
            "name": self.name,
            "deployment_status": self.deployment_status,
            "engine_workflow_id": self.engine_workflow_id,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_definition:
            payload["definition"] = self.definition
        return payload


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, (EngineTransientError, TimeoutError, asyncio.TimeoutError))


class DeploymentCoordinator:
    """Compiles feasible scopes into engine workflows and manages their lifecycle."""

    def __init__(self, ctx) -> None:
        self._ctx = ctx
        self._policy = engine_retry_policy(ctx.settings)

    def compile_workflow(
        self, tenant_id: str, scope: ScopeDraft, slot, report: FeasibilityReport
    ) -> dict[str, Any]:
        if not report.feasible:
            raise ValidationError("Cannot compile an infeasible scope", unmapped=report.unmapped)
        ordered = sorted(report.mapped, key=lambda item: _NODE_ORDER.index(item.field))
        nodes: list[dict[str, Any]] = []
        for index, item in enumerate(ordered, start=1):
            nodes.append(
                {
                    "id": f"node-{index}",
                    "name": f"{index:02d} {item.capability_id}",
                    "type": item.node_type,
                    "role": item.field,
                    "capability": item.capability_id,
                    "source_term": item.term,
                    "position": [index * 240, 300],
                    "parameters": {},
                }
            )
        connections: dict[str, Any] = {}
        for current, following in zip(nodes, nodes[1:]):
            connections[current["name"]] = {
                "main": [[{"node": following["name"], "type": "main", "index": 0}]]
            }
        outputs = ", ".join(scope.outputs) or "default output"
        title = f"{scope.trigger} to {outputs}"
        return {
            "name": workflow_name(tenant_id, title),
            "tags": [slot.id],
            "nodes": nodes,
            "connections": connections,
            "settings": {"executionOrder": "v1", "saveManualExecutions": True},
            "meta": {
                "tenant_id": tenant_id,
                "slot_id": slot.id,
                "complexity": report.complexity.value,
                "defaults_applied": list(scope.defaults_applied),
                "warnings": list(report.warnings),
            },
        }

    async def deploy(
        self,
        tenant_id: str,
        session_id: str | None,
        scope: ScopeDraft,
        slot,
        report: FeasibilityReport,
    ) -> WorkflowView:
        """Persist a pending workflow and submit it to the engine.

        Transient engine failures are retried with exponential backoff; once the
        attempts are exhausted the row is marked failed and DeploymentFailed is
        raised. A 4xx rejection is not retried: the pending row is removed and
        the EngineValidationError propagates with the engine's reason.
        """
        require_tenant_id(tenant_id)
        definition = self.compile_workflow(tenant_id, scope, slot, report)
        client = self._ctx.engine_client
        if client is None:
            raise DeploymentFailed("No execution engine is configured")

        workflow_id = str(uuid4())
        now = self._ctx.now()
        async with self._ctx.session_factory() as db:
            if session_id:
                await workflows_repo.delete_failed_for_session(db, tenant_id=tenant_id, session_id=session_id)
            await workflows_repo.create_workflow(
                db,
                workflow_id=workflow_id,
                tenant_id=tenant_id,
                slot_id=slot.id,
                session_id=session_id,
                name=definition["name"],
                definition=definition,
                now=now,
            )
            await db.commit()

        attempts = 0

        async def _submit() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            return await client.create_workflow(definition)

        try:
            created = await retry_async(
                _submit,
                policy=self._policy,
                retryable=_is_transient,
                operation="engine_deploy",
                telemetry=self._ctx.telemetry,
            )
        except EngineValidationError as exc:
            async with self._ctx.session_factory() as db:
                await workflows_repo.delete_workflow(db, workflow_id)
                await db.commit()
            logger.warning(
                "workflow_rejected tenant_id=%s slot_id=%s status=%s reason=%s",
                tenant_id,
                slot.id,
                exc.status_code,
                exc,
            )
            raise
        except (EngineTransientError, TimeoutError, asyncio.TimeoutError) as exc:
            async with self._ctx.session_factory() as db:
                await workflows_repo.mark_status(
                    db,
                    workflow_id=workflow_id,
                    status=DeploymentStatus.FAILED.value,
                    now=self._ctx.now(),
                    last_error=str(exc) or type(exc).__name__,
                )
                await db.commit()
            logger.error(
                "workflow_deploy_failed tenant_id=%s slot_id=%s attempts=%s error=%s",
                tenant_id,
                slot.id,
                attempts,
                type(exc).__name__,
            )
            raise DeploymentFailed(
                f"Engine unavailable after {attempts} attempts: {exc or type(exc).__name__}"
            ) from exc

        engine_workflow_id = str(created.get("id") or "")
        async with self._ctx.session_factory() as db:
            await workflows_repo.mark_status(
                db,
                workflow_id=workflow_id,
                status=DeploymentStatus.DEPLOYED.value,
                now=self._ctx.now(),
                engine_workflow_id=engine_workflow_id or None,
            )
            await db.commit()
            row = await workflows_repo.get_workflow(db, tenant_id=tenant_id, workflow_id=workflow_id)
            view = WorkflowView.of(row)
            await db.rollback()
        logger.info(
            "workflow_deployed tenant_id=%s slot_id=%s workflow_id=%s engine_workflow_id=%s attempts=%s",
            tenant_id,
            slot.id,
            workflow_id,
            engine_workflow_id,
            attempts,
        )
        return view

    async def get_workflow(self, tenant_id: str, workflow_id: str) -> WorkflowView:
        async with self._ctx.session_factory() as db:
            row = await workflows_repo.get_workflow(db, tenant_id=tenant_id, workflow_id=workflow_id)
            if row is None:
                raise WorkflowNotFoundError(f"workflow {workflow_id} not found")
            return WorkflowView.of(row)

    async def list_workflows(self, tenant_id: str) -> list[WorkflowView]:
        async with self._ctx.session_factory() as db:
            rows = await workflows_repo.list_tenant_workflows(db, tenant_id)
            return [WorkflowView.of(row) for row in rows]

    async def _deployed(self, tenant_id: str, workflow_id: str) -> WorkflowView:
        view = await self.get_workflow(tenant_id, workflow_id)
        if view.deployment_status != DeploymentStatus.DEPLOYED.value or not view.engine_workflow_id:
            raise WorkflowNotDeployedError(f"workflow {workflow_id} is {view.deployment_status}")
        return view

    async def _engine_call(self, func: Callable[[], Awaitable[Any]], operation: str) -> Any:
        return await retry_async(
            func,
            policy=self._policy,
            retryable=_is_transient,
            operation=operation,
            telemetry=self._ctx.telemetry,
        )

    async def activate(self, tenant_id: str, workflow_id: str, active: bool = True) -> dict[str, Any]:
        view = await self._deployed(tenant_id, workflow_id)
        client = self._ctx.engine_client
        if active:
            result = await self._engine_call(lambda: client.activate_workflow(view.engine_workflow_id), "engine_activate")
        else:
            result = await self._engine_call(lambda: client.deactivate_workflow(view.engine_workflow_id), "engine_deactivate")
        logger.info("workflow_activation tenant_id=%s workflow_id=%s active=%s", tenant_id, workflow_id, active)
        return {"workflow_id": workflow_id, "active": bool(result.get("active", active))}

    async def execute(
        self, tenant_id: str, workflow_id: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        view = await self._deployed(tenant_id, workflow_id)
        client = self._ctx.engine_client
        execution = await self._engine_call(
            lambda: client.execute_workflow(view.engine_workflow_id, payload or {}),
            "engine_execute",
        )
        return {"workflow_id": workflow_id, "execution": execution}

    async def workflow_status(self, tenant_id: str, workflow_id: str, *, limit: int = 10) -> dict[str, Any]:
        view = await self.get_workflow(tenant_id, workflow_id)
        payload: dict[str, Any] = {"workflow": view.to_dict(), "executions": []}
        client = self._ctx.engine_client
        if view.engine_workflow_id and client is not None:
            try:
                payload["executions"] = await client.list_executions(view.engine_workflow_id, limit=limit)
            except EngineTransientError as exc:
                # Status stays readable while the engine is degraded.
                logger.warning("workflow_executions_unavailable workflow_id=%s error=%s", workflow_id, exc)
                payload["executions_error"] = str(exc)
        return payload

    async def release_unused_slot(self, tenant_id: str) -> tuple[int, SlotView | None]:
        # A slot stays with its tenant while any workflow row, failed ones included, still
        # carries its tag; the pool only gets it back once the tenant has none left.
        require_tenant_id(tenant_id)
        async with self._ctx.session_factory() as db:
            remaining = await workflows_repo.count_tenant_workflows(db, tenant_id)
            await db.rollback()
        if remaining:
            return remaining, None
        return 0, await SlotAllocator(self._ctx).release_slot(tenant_id)

    async def teardown(self, tenant_id: str, workflow_id: str) -> dict[str, Any]:
        """Delete a workflow everywhere and release the slot once the tenant has none left."""
        view = await self.get_workflow(tenant_id, workflow_id)
        client = self._ctx.engine_client
        if view.engine_workflow_id and client is not None:
            try:
                await self._engine_call(lambda: client.delete_workflow(view.engine_workflow_id), "engine_delete")
            except EngineValidationError as exc:
                if exc.status_code != 404:
                    raise
                logger.info("workflow_already_absent workflow_id=%s", workflow_id)

        async with self._ctx.session_factory() as db:
            await workflows_repo.delete_workflow(db, workflow_id)
            await db.commit()
        remaining, released = await self.release_unused_slot(tenant_id)
        logger.info(
            "workflow_torn_down tenant_id=%s workflow_id=%s remaining=%s slot_released=%s",
            tenant_id,
            workflow_id,
            remaining,
            released is not None,
        )
        return {
            "workflow_id": workflow_id,
            "remaining_workflows": remaining,
            "slot_released": released is not None,
            "slot_id": view.slot_id,
        }
