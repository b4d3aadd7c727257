from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from flowforge.core.config import Settings
from flowforge.core.errors import EngineTransientError, EngineValidationError, ProviderConfigError
from flowforge.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    # Prefer the engine's own explanation so it can be relayed to the user.
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = response.text.strip() if response.text else ""
    return text[:512] or f"engine returned HTTP {response.status_code}"


def _unwrap_list(payload: Any) -> list[dict[str, Any]]:
    # List endpoints answer either a bare list or {"data": [...], "nextCursor": ...}.
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    return [item for item in payload or [] if isinstance(item, dict)]


class HttpEngineClient:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        if not settings.engine_api_url:
            raise ProviderConfigError("ENGINE_API_URL is required for the http engine provider")
        self._settings = settings
        self._base_url = settings.engine_api_url.rstrip("/")
        self._client = client
        self.telemetry = telemetry or Telemetry()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.engine_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.engine_api_key:
            headers[self._settings.engine_api_key_header] = self._settings.engine_api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.request(
                method,
                f"{self._base_url}{path}",
                json=json,
                params=params,
                headers=self._headers(),
            )
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            latency_ms = (time.monotonic() - start) * 1000.0
            self.telemetry.record_external_call(integration="engine", latency_ms=latency_ms, success=False)
            logger.warning("engine_request_unreachable method=%s path=%s error=%s", method, path, type(exc).__name__)
            raise EngineTransientError(f"engine unreachable: {type(exc).__name__}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 500:
            self.telemetry.record_external_call(integration="engine", latency_ms=latency_ms, success=False)
            raise EngineTransientError(_error_message(response), status_code=response.status_code)
        if response.status_code >= 400:
            self.telemetry.record_external_call(integration="engine", latency_ms=latency_ms, success=False)
            raise EngineValidationError(_error_message(response), status_code=response.status_code)

        self.telemetry.record_external_call(integration="engine", latency_ms=latency_ms, success=True)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise EngineTransientError("engine returned a non-JSON body", status_code=response.status_code) from exc

    async def create_workflow(self, definition: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/workflows", json=definition) or {}

    async def get_workflow(self, workflow_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/workflows/{workflow_id}") or {}

    async def update_workflow(self, workflow_id: str, definition: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/workflows/{workflow_id}", json=definition) or {}

    async def delete_workflow(self, workflow_id: str) -> None:
        await self._request("DELETE", f"/workflows/{workflow_id}")

    async def activate_workflow(self, workflow_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/workflows/{workflow_id}/activate") or {}

    async def deactivate_workflow(self, workflow_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/workflows/{workflow_id}/deactivate") or {}

    async def execute_workflow(self, workflow_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("POST", f"/workflows/{workflow_id}/execute", json=payload or {}) or {}

    async def list_executions(self, workflow_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/executions", params={"workflowId": workflow_id, "limit": limit})
        return _unwrap_list(payload)

    async def list_workflows(self, *, tag: str | None = None) -> list[dict[str, Any]]:
        params = {"tags": tag} if tag else None
        payload = await self._request("GET", "/workflows", params=params)
        return _unwrap_list(payload)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
