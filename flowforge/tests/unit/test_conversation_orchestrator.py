from __future__ import annotations

import pytest

from flowforge.agent import prompts
from flowforge.agent.orchestrator import advance, get_conversation
from flowforge.core.errors import (
    EngineTransientError,
    EngineValidationError,
    SessionClosedError,
    SessionNotFoundError,
    SessionTenantMismatchError,
)
from flowforge.persistence.guards import TenantPredicateError
from flowforge.providers.llm.fake import FakeLLMProvider
from flowforge.services.allocator import SlotAllocator
from flowforge.services.deployment import DeploymentCoordinator
from flowforge.services.sessions import IDLE_CANCELLED_MESSAGE


async def _talk(ctx, session_id: str, *messages: str, tenant_id: str = "t1"):
    result = None
    for message in messages:
        result = await advance(ctx, tenant_id, session_id, message)
    return result


def _reasons(result) -> list[tuple[str, str, str]]:
    return [(item["from"], item["to"], item["reason"]) for item in result.transitions]


@pytest.mark.asyncio
async def test_greeting_gets_welcome(ctx) -> None:
    result = await advance(ctx, "t1", None, "hello")
    assert result.session_id
    assert result.phase == "greeting"
    assert result.turn["role"] == "agent"
    assert result.turn["content"] == prompts.WELCOME_MESSAGE
    assert result.turn["metadata"]["kind"] == "welcome"


@pytest.mark.asyncio
async def test_out_of_domain_message_is_redirected(ctx) -> None:
    result = await advance(ctx, "t1", "s1", "what is the capital of France")
    assert result.phase == "greeting"
    assert result.turn["metadata"]["kind"] == "redirect"

    gibberish = await advance(ctx, "t1", "s1", "!!! ???")
    assert gibberish.phase == "greeting"
    assert gibberish.turn["metadata"]["kind"] == "redirect"


@pytest.mark.asyncio
async def test_full_conversation_deploys_workflow(ctx, engine) -> None:
    first = await _talk(ctx, "s1", "hello", "I want to automate something")
    assert first.phase == "scoping"
    assert first.turn["metadata"]["asked_field"] == "trigger"
    assert first.turn["metadata"]["source"] == "template"

    second = await _talk(ctx, "s1", "a webhook")
    assert second.phase == "scoping"
    assert second.scope["trigger"] == "webhook"
    assert second.turn["metadata"]["asked_field"] == "actions"

    third = await _talk(ctx, "s1", "post to slack")
    assert third.phase == "validating"
    assert third.turn["metadata"]["kind"] == "summary"
    assert third.report["feasible"] is True
    assert third.scope["defaults_applied"] == ["data_sources", "conditions"]

    done = await _talk(ctx, "s1", "yes")
    assert done.phase == "completed"
    assert done.turn["metadata"]["kind"] == "deployed"
    assert done.workflow_id is not None
    assert ("validating", "creating", "user_confirmed") in _reasons(done)
    assert ("creating", "completed", "deployed") in _reasons(done)
    assert len(engine.workflows) == 1

    slot = await SlotAllocator(ctx).get_tenant_slot("t1")
    assert slot is not None
    workflow = await DeploymentCoordinator(ctx).get_workflow("t1", done.workflow_id)
    assert workflow.slot_id == slot.id
    assert workflow.session_id == "s1"

    conversation = await get_conversation(ctx, "t1", "s1")
    assert conversation["phase"] == "completed"
    assert conversation["archived_at"] is not None
    assert len(conversation["turns"]) == 10
    assert [turn["seq"] for turn in conversation["turns"]] == list(range(1, 11))
    assert [turn["role"] for turn in conversation["turns"][:2]] == ["user", "agent"]
    phases = [item["to"] for item in conversation["transitions"]]
    assert phases == ["scoping", "validating", "creating", "completed"]

    with pytest.raises(SessionClosedError):
        await advance(ctx, "t1", "s1", "hello again")


@pytest.mark.asyncio
async def test_complete_first_message_goes_straight_to_validation(ctx) -> None:
    result = await advance(ctx, "t1", "s1", "When a webhook is called, send a slack message")
    assert result.phase == "validating"
    assert result.turn["metadata"]["kind"] == "summary"
    assert result.turn["metadata"]["complexity"] == "simple"
    assert [item["to"] for item in result.transitions] == ["scoping", "validating"]


@pytest.mark.asyncio
async def test_infeasible_scope_offers_alternatives(ctx) -> None:
    result = await advance(
        ctx, "t1", "s1", "trigger: quantum entangler; actions: send-email; outputs: email"
    )
    assert result.phase == "scoping"
    assert result.turn["metadata"]["kind"] == "alternatives"
    assert result.turn["metadata"]["unmapped"] == ["quantum entangler"]
    assert result.turn["metadata"]["asked_field"] == "trigger"
    assert len(result.turn["metadata"]["alternatives"]["quantum entangler"]) <= 3
    assert result.scope["trigger"] is None
    assert result.scope["actions"] == ["send-email"]


@pytest.mark.asyncio
async def test_scoping_redirect_repeats_pending_question(ctx) -> None:
    await _talk(ctx, "s1", "a webhook")
    result = await _talk(ctx, "s1", "what is the capital of France")
    assert result.phase == "scoping"
    assert result.turn["metadata"]["kind"] == "redirect"
    assert result.turn["metadata"]["asked_field"] == "actions"


@pytest.mark.asyncio
async def test_declining_summary_returns_to_scoping(ctx) -> None:
    await _talk(ctx, "s1", "When a webhook is called, send a slack message")
    unclear = await _talk(ctx, "s1", "maybe later")
    assert unclear.phase == "validating"
    assert unclear.turn["content"] == prompts.VALIDATING_REDIRECT_MESSAGE

    declined = await _talk(ctx, "s1", "no")
    assert declined.phase == "scoping"
    assert declined.turn["content"] == prompts.DECLINED_MESSAGE
    assert ("validating", "scoping", "user_declined") in _reasons(declined)


@pytest.mark.asyncio
async def test_correction_during_validation_is_revalidated(ctx) -> None:
    await _talk(ctx, "s1", "When a webhook is called, send a slack message")
    result = await _talk(ctx, "s1", "also send me an email")
    assert result.phase == "validating"
    assert result.turn["metadata"]["kind"] == "summary"
    assert result.scope["actions"] == ["send-slack-message", "send-email"]


@pytest.mark.asyncio
async def test_full_pool_keeps_session_in_validation(ctx) -> None:
    allocator = SlotAllocator(ctx)
    for tenant in ("a", "b", "c", "d"):
        await allocator.acquire_slot(tenant)
    await _talk(ctx, "s1", "When a webhook is called, send a slack message")
    result = await _talk(ctx, "s1", "yes")
    assert result.phase == "validating"
    assert result.turn["metadata"]["kind"] == "capacity"
    assert ("creating", "validating", "capacity_exceeded") in _reasons(result)


@pytest.mark.asyncio
async def test_engine_rejection_reopens_scoping(ctx, engine) -> None:
    engine.fail("create_workflow", EngineValidationError("unknown node type", status_code=400))
    await _talk(ctx, "s1", "When a webhook is called, send a slack message")
    result = await _talk(ctx, "s1", "yes")
    assert result.phase == "scoping"
    assert result.turn["metadata"]["kind"] == "engine_rejected"
    assert result.turn["metadata"]["status_code"] == 400
    assert "unknown node type" in result.turn["content"]
    assert ("creating", "failed", "engine_rejected") in _reasons(result)
    assert ("failed", "scoping", "reopened_for_correction") in _reasons(result)
    assert await DeploymentCoordinator(ctx).list_workflows("t1") == []
    # Nothing was deployed, so the slot goes back to the pool.
    assert await SlotAllocator(ctx).get_tenant_slot("t1") is None
    trail = await SlotAllocator(ctx).audit_trail("p01-s01")
    assert [entry["action"] for entry in trail] == ["assigned", "unassigned"]


@pytest.mark.asyncio
async def test_exhausted_retries_fail_then_recover(ctx, engine) -> None:
    engine.fail("create_workflow", *[EngineTransientError("engine 503", status_code=503) for _ in range(3)])
    await _talk(ctx, "s1", "When a webhook is called, send a slack message")
    failed = await _talk(ctx, "s1", "yes")
    assert failed.phase == "failed"
    assert failed.turn["metadata"]["kind"] == "deployment_failed"

    conversation = await get_conversation(ctx, "t1", "s1")
    assert conversation["archived_at"] is not None

    revalidated = await _talk(ctx, "s1", "please try again")
    assert revalidated.phase == "validating"
    assert ("failed", "scoping", "reopened_for_correction") in _reasons(revalidated)

    done = await _talk(ctx, "s1", "yes")
    assert done.phase == "completed"
    rows = await DeploymentCoordinator(ctx).list_workflows("t1")
    assert [row.deployment_status for row in rows] == ["deployed"]


@pytest.mark.asyncio
async def test_idle_session_is_cancelled_on_next_message(ctx, clock) -> None:
    await _talk(ctx, "s1", "a webhook")
    clock.advance(hours=25)
    result = await _talk(ctx, "s1", "post to slack")
    assert result.phase == "cancelled"
    assert result.turn["content"] == IDLE_CANCELLED_MESSAGE

    conversation = await get_conversation(ctx, "t1", "s1")
    assert conversation["phase"] == "cancelled"
    assert conversation["transitions"][-1]["reason"] == "inactivity_timeout"
    assert conversation["turns"][-2]["content"] == "post to slack"

    with pytest.raises(SessionClosedError):
        await _talk(ctx, "s1", "hello")


@pytest.mark.asyncio
async def test_session_ids_never_cross_tenants(ctx) -> None:
    await advance(ctx, "t1", "s1", "hello")
    with pytest.raises(SessionTenantMismatchError):
        await advance(ctx, "t2", "s1", "hello")
    with pytest.raises(SessionTenantMismatchError):
        await get_conversation(ctx, "t2", "s1")
    with pytest.raises(SessionNotFoundError):
        await get_conversation(ctx, "t1", "missing")
    with pytest.raises(TenantPredicateError):
        await advance(ctx, "", "s2", "hello")


@pytest.mark.asyncio
async def test_llm_drafts_clarifying_question(ctx) -> None:
    ctx.llm = FakeLLMProvider("Which event should kick this off?")
    result = await advance(ctx, "t1", "s1", "I want to automate something")
    assert result.turn["content"] == "Which event should kick this off?"
    assert result.turn["metadata"]["source"] == "llm"
    assert result.turn["metadata"]["asked_field"] == "trigger"
    assert ctx.llm.prompts


@pytest.mark.asyncio
async def test_llm_failure_falls_back_to_template(ctx) -> None:
    ctx.llm = FakeLLMProvider(fail=True)
    result = await advance(ctx, "t1", "s1", "I want to automate something")
    assert result.phase == "scoping"
    assert result.turn["content"] == prompts.question_template("trigger", ctx.catalog)
    assert result.turn["metadata"]["source"] == "template"
