from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from flowforge.apps.api.errors import classify_domain_error
from flowforge.apps.api.main import create_app
from flowforge.core.errors import CapacityExceeded, ConsistencyViolation, EngineTransientError, ValidationError


@pytest.fixture
async def client(ctx):
    # The test owns the context; ASGITransport does not run the lifespan.
    app = create_app(context=ctx)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def _tenant(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id}


async def _say(client, tenant_id: str, message: str, session_id: str | None = None) -> dict:
    body = {"message": message}
    if session_id:
        body["session_id"] = session_id
    response = await client.post("/v1/conversations/messages", json=body, headers=_tenant(tenant_id))
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_health_envelope(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"]["status"] == "ok"
    assert payload["data"]["engine_configured"] is True
    assert payload["data"]["llm_configured"] is False
    assert payload["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_conversation_requires_tenant_header(client) -> None:
    response = await client.post("/v1/conversations/messages", json={"message": "hello"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_tenant_id_in_body_is_rejected(client) -> None:
    response = await client.post(
        "/v1/conversations/messages",
        json={"message": "hello", "tenant_id": "someone-else"},
        headers=_tenant("t1"),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_ID_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_oversized_message_fails_validation(client) -> None:
    response = await client.post(
        "/v1/conversations/messages", json={"message": "x" * 4001}, headers=_tenant("t1")
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_conversation_to_running_workflow(client, engine) -> None:
    greeting = await _say(client, "t1", "hello")
    session_id = greeting["session_id"]
    assert greeting["phase"] == "greeting"
    assert greeting["turn"]["metadata"]["kind"] == "welcome"

    summary = await _say(client, "t1", "When a webhook is called, send a slack message", session_id)
    assert summary["phase"] == "validating"
    assert summary["report"]["feasible"] is True

    done = await _say(client, "t1", "yes", session_id)
    assert done["phase"] == "completed"
    workflow_id = done["workflow_id"]

    conversation = await client.get(f"/v1/conversations/{session_id}", headers=_tenant("t1"))
    assert conversation.status_code == 200
    assert conversation.json()["data"]["phase"] == "completed"

    other = await client.get(f"/v1/conversations/{session_id}", headers=_tenant("t2"))
    assert other.status_code == 403
    assert other.json()["error"]["code"] == "SESSION_TENANT_MISMATCH"

    closed = await client.post(
        "/v1/conversations/messages",
        json={"message": "hello", "session_id": session_id},
        headers=_tenant("t1"),
    )
    assert closed.status_code == 409
    assert closed.json()["error"]["code"] == "SESSION_CLOSED"

    slot = await client.get("/v1/slots/me", headers=_tenant("t1"))
    assert slot.json()["data"]["assigned_tenant_id"] == "t1"
    no_slot = await client.get("/v1/slots/me", headers=_tenant("t2"))
    assert no_slot.json()["data"] is None

    listed = await client.get("/v1/workflows", headers=_tenant("t1"))
    assert [item["id"] for item in listed.json()["data"]] == [workflow_id]

    activated = await client.post(
        f"/v1/workflows/{workflow_id}/activate", json={"active": True}, headers=_tenant("t1")
    )
    assert activated.status_code == 200
    assert activated.json()["data"]["active"] is True

    executed = await client.post(
        f"/v1/workflows/{workflow_id}/execute", json={"payload": {"ping": 1}}, headers=_tenant("t1")
    )
    assert executed.status_code == 200
    assert executed.json()["data"]["execution"]["status"] == "success"

    status = await client.get(f"/v1/workflows/{workflow_id}", headers=_tenant("t1"))
    assert status.json()["data"]["workflow"]["deployment_status"] == "deployed"
    assert len(status.json()["data"]["executions"]) == 1

    hidden = await client.get(f"/v1/workflows/{workflow_id}", headers=_tenant("t2"))
    assert hidden.status_code == 404
    assert hidden.json()["error"]["code"] == "WORKFLOW_NOT_FOUND"

    deleted = await client.delete(f"/v1/workflows/{workflow_id}", headers=_tenant("t1"))
    assert deleted.status_code == 200
    assert deleted.json()["data"]["slot_released"] is True
    assert engine.workflows == {}
    assert (await client.get("/v1/slots/me", headers=_tenant("t1"))).json()["data"] is None


@pytest.mark.asyncio
async def test_missing_conversation_is_404(client) -> None:
    response = await client.get("/v1/conversations/nope", headers=_tenant("t1"))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_admin_routes_require_operator(client) -> None:
    response = await client.get("/v1/admin/slots", headers=_tenant("t1"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_admin_pool_operations(client, engine) -> None:
    engine.seed_workflow(name="[ghost] leftover", tags=["p01-s01"])
    await _say(client, "t1", "When a webhook is called, send a slack message", "s1")
    await _say(client, "t1", "yes", "s1")

    overview = await client.get("/v1/admin/slots", headers=_tenant("ops"))
    assert overview.status_code == 200
    summary = overview.json()["data"]["summary"]
    assert summary["total"] == 4
    assert summary["active"] == 1
    assert [item["id"] for item in summary["quarantined"]] == ["p01-s01"]

    archived = await client.get("/v1/admin/slots", params={"status": "archived"}, headers=_tenant("ops"))
    assert [slot["id"] for slot in archived.json()["data"]["slots"]] == ["p01-s01"]

    refused = await client.post("/v1/admin/slots/p01-s01/restore", headers=_tenant("ops"))
    assert refused.status_code == 409
    assert refused.json()["error"]["code"] == "CONSISTENCY_VIOLATION"
    assert refused.json()["error"]["details"]["layer"] == "L2"

    engine.workflows = {key: value for key, value in engine.workflows.items() if "p01-s01" not in value["tags"]}
    restored = await client.post(
        "/v1/admin/slots/p01-s01/restore", json={"note": "cleaned up"}, headers=_tenant("ops")
    )
    assert restored.status_code == 200
    assert restored.json()["data"]["status"] == "available"

    audit = await client.get("/v1/admin/slots/p01-s01/audit", headers=_tenant("ops"))
    # Quarantine warning, refused restore warning, then the verified restore.
    assert [entry["action"] for entry in audit.json()["data"]] == ["warning", "warning", "verified"]

    unknown = await client.get("/v1/admin/slots/p09-s09/audit", headers=_tenant("ops"))
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "SLOT_NOT_FOUND"

    reconcile = await client.post("/v1/admin/slots/reconcile", headers=_tenant("ops"))
    assert reconcile.status_code == 200
    assert reconcile.json()["data"]["scanned"] == 4

    bootstrap = await client.post("/v1/admin/slots/bootstrap", headers=_tenant("ops"))
    assert bootstrap.json()["data"] == {"created": 0}

    expire = await client.post("/v1/admin/sessions/expire", headers=_tenant("ops"))
    assert expire.json()["data"] == {"expired": 0}


def test_domain_errors_map_to_status_codes() -> None:
    assert classify_domain_error(CapacityExceeded("full"))[:2] == (503, "CAPACITY_EXCEEDED")
    status_code, code, details = classify_domain_error(ConsistencyViolation("L3", "p01-s01", "fresh metadata"))
    assert (status_code, code) == (409, "CONSISTENCY_VIOLATION")
    assert details == {"layer": "L3", "slot_id": "p01-s01", "reason": "fresh metadata"}
    assert classify_domain_error(ValidationError("bad", unmapped=["x"]))[2] == {"unmapped": ["x"]}
    assert classify_domain_error(EngineTransientError("down", status_code=503))[:2] == (502, "ENGINE_UNAVAILABLE")
