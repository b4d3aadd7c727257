from __future__ import annotations

from typing import Any, Protocol


class EngineClient(Protocol):
    """Abstract capability contract of the external execution engine."""

    async def create_workflow(self, definition: dict[str, Any]) -> dict[str, Any]:
        ...

    async def get_workflow(self, workflow_id: str) -> dict[str, Any]:
        ...

    async def update_workflow(self, workflow_id: str, definition: dict[str, Any]) -> dict[str, Any]:
        ...

    async def delete_workflow(self, workflow_id: str) -> None:
        ...

    async def activate_workflow(self, workflow_id: str) -> dict[str, Any]:
        ...

    async def deactivate_workflow(self, workflow_id: str) -> dict[str, Any]:
        ...

    async def execute_workflow(self, workflow_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        ...

    async def list_executions(self, workflow_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        ...

    async def list_workflows(self, *, tag: str | None = None) -> list[dict[str, Any]]:
        ...
