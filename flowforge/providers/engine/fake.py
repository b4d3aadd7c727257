from __future__ import annotations

from dataclasses import dataclass
from itertools import count
from typing import Any

from flowforge.core.errors import EngineValidationError


@dataclass(frozen=True)
class EngineCall:
    method: str
    workflow_id: str | None = None
    payload: dict[str, Any] | None = None


class FakeEngineClient:
    """In-memory engine for tests and local runs.

    Failures are scripted per method: ``fail("create_workflow", err, err)`` makes
    the next two create calls raise before the third succeeds. Every call is
    recorded, including the failed ones.
    """

    def __init__(self) -> None:
        self.calls: list[EngineCall] = []
        self.workflows: dict[str, dict[str, Any]] = {}
        self.executions: dict[str, list[dict[str, Any]]] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._ids = count(1)

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def calls_for(self, method: str) -> list[EngineCall]:
        return [call for call in self.calls if call.method == method]

    def seed_workflow(self, *, name: str, tags: list[str], active: bool = False) -> dict[str, Any]:
        # Plant a workflow directly, e.g. a residual left behind by a crashed deploy.
        workflow_id = f"wf-{next(self._ids)}"
        record = {"id": workflow_id, "name": name, "tags": list(tags), "active": active, "nodes": []}
        self.workflows[workflow_id] = record
        return dict(record)

    def _record(self, method: str, workflow_id: str | None = None, payload: dict[str, Any] | None = None) -> None:
        self.calls.append(EngineCall(method=method, workflow_id=workflow_id, payload=payload))
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _require(self, workflow_id: str) -> dict[str, Any]:
        record = self.workflows.get(workflow_id)
        if record is None:
            raise EngineValidationError(f"workflow {workflow_id} not found", status_code=404)
        return record

    async def create_workflow(self, definition: dict[str, Any]) -> dict[str, Any]:
        self._record("create_workflow", payload=definition)
        workflow_id = f"wf-{next(self._ids)}"
        record = {
            "id": workflow_id,
            "name": definition.get("name"),
            "tags": list(definition.get("tags") or []),
            "active": False,
            "nodes": list(definition.get("nodes") or []),
        }
        self.workflows[workflow_id] = record
        return dict(record)

    async def get_workflow(self, workflow_id: str) -> dict[str, Any]:
        self._record("get_workflow", workflow_id)
        return dict(self._require(workflow_id))

    async def update_workflow(self, workflow_id: str, definition: dict[str, Any]) -> dict[str, Any]:
        self._record("update_workflow", workflow_id, definition)
        record = self._require(workflow_id)
        record.update({key: value for key, value in definition.items() if key != "id"})
        return dict(record)

    async def delete_workflow(self, workflow_id: str) -> None:
        self._record("delete_workflow", workflow_id)
        self._require(workflow_id)
        del self.workflows[workflow_id]
        self.executions.pop(workflow_id, None)

    async def activate_workflow(self, workflow_id: str) -> dict[str, Any]:
        self._record("activate_workflow", workflow_id)
        record = self._require(workflow_id)
        record["active"] = True
        return dict(record)

    async def deactivate_workflow(self, workflow_id: str) -> dict[str, Any]:
        self._record("deactivate_workflow", workflow_id)
        record = self._require(workflow_id)
        record["active"] = False
        return dict(record)

    async def execute_workflow(self, workflow_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        self._record("execute_workflow", workflow_id, payload)
        self._require(workflow_id)
        runs = self.executions.setdefault(workflow_id, [])
        execution = {"id": f"exec-{len(runs) + 1}", "workflowId": workflow_id, "status": "success", "finished": True}
        runs.append(execution)
        return dict(execution)

    async def list_executions(self, workflow_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        self._record("list_executions", workflow_id)
        runs = self.executions.get(workflow_id, [])
        return [dict(run) for run in reversed(runs)][:limit]

    async def list_workflows(self, *, tag: str | None = None) -> list[dict[str, Any]]:
        self._record("list_workflows")
        return [
            dict(record)
            for record in self.workflows.values()
            if tag is None or tag in record.get("tags", [])
        ]
