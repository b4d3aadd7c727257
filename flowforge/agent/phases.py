from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
import logging
from typing import Any

from flowforge.core.errors import (
    CapacityExceeded,
    DeploymentFailed,
    EngineValidationError,
    FlowForgeError,
)
from flowforge.agent import prompts
from flowforge.domain.scope import OPTIONAL_FIELDS, FeasibilityReport, Phase, ScopeDraft
from flowforge.domain.state import ConversationState
from flowforge.services.allocator import SlotAllocator
from flowforge.services.deployment import DeploymentCoordinator
from flowforge.services.extraction import MessageSignals
from flowforge.services.feasibility import validate_scope
from flowforge.services.sessions import transition_entry


logger = logging.getLogger(__name__)


@dataclass
class TurnContext:
    """Mutable view of one turn while a phase handler works on it."""

    ctx: Any
    tenant_id: str
    session_id: str
    message: str
    phase: Phase
    scope: ScopeDraft
    extracted: ScopeDraft
    signals: MessageSignals
    history: list[dict[str, Any]] = field(default_factory=list)
    transitions: list[dict[str, Any]] = field(default_factory=list)
    reply: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    report: FeasibilityReport | None = None
    workflow_id: str | None = None

    @classmethod
    def from_state(cls, ctx, state: ConversationState) -> "TurnContext":
        return cls(
            ctx=ctx,
            tenant_id=state["tenant_id"],
            session_id=state["session_id"],
            message=state["user_message"],
            phase=Phase(state["phase"]),
            scope=ScopeDraft.from_dict(state.get("scope")),
            extracted=ScopeDraft.from_dict(state.get("extracted")),
            signals=MessageSignals(**state["signals"]),
            history=list(state.get("history") or []),
            transitions=list(state.get("transitions") or []),
            workflow_id=state.get("workflow_id"),
        )

    def to_update(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "scope": self.scope.to_dict(),
            "transitions": self.transitions,
            "reply": self.reply,
            "reply_metadata": self.metadata,
            "report": self.report.to_dict() if self.report is not None else None,
            "workflow_id": self.workflow_id,
        }

    def move(self, target: Phase, reason: str) -> None:
        self.transitions.append(transition_entry(self.phase.value, target.value, self.ctx.now(), reason))
        logger.info(
            "session_transition session_id=%s from=%s to=%s reason=%s",
            self.session_id,
            self.phase.value,
            target.value,
            reason,
        )
        self.phase = target

    def say(self, content: str, kind: str, **extra: Any) -> None:
        self.reply = content
        self.metadata = {"kind": kind, **extra}


def redirect(turn: TurnContext) -> None:
    # Out-of-domain input never changes the phase; repeat what is still needed.
    if turn.phase in (Phase.SCOPING, Phase.GREETING) and turn.scope.missing and not turn.scope.is_empty:
        pending = turn.scope.missing[0]
        turn.say(
            f"I could not find the {pending.rstrip('s')} in that message. "
            f"{prompts.question_template(pending, turn.ctx.catalog)}",
            "redirect",
            asked_field=pending,
        )
        return
    turn.say(prompts.REDIRECT_MESSAGE, "redirect")


async def ask_missing(turn: TurnContext) -> None:
    """Ask one question, for the first required field that is still empty."""
    missing = turn.scope.missing[0]
    question = prompts.question_template(missing, turn.ctx.catalog)
    source = "template"
    llm = turn.ctx.llm
    if llm is not None:
        messages = prompts.build_question_messages(
            missing, turn.scope, turn.history, turn.message, turn.ctx.catalog
        )
        timeout_s = turn.ctx.settings.llm_call_timeout_ms / 1000.0
        try:
            drafted = await asyncio.wait_for(llm.complete(messages), timeout=timeout_s)
        except (FlowForgeError, asyncio.TimeoutError) as exc:
            logger.warning("question_draft_fallback field=%s error=%s", missing, type(exc).__name__)
        else:
            if drafted and drafted.strip():
                question = drafted.strip()
                source = "llm"
    turn.say(question, "question", asked_field=missing, source=source)


def apply_optional_defaults(scope: ScopeDraft) -> None:
    # Optional fields left empty fall back to engine defaults without a question.
    scope.defaults_applied = [name for name in OPTIONAL_FIELDS if not getattr(scope, name)]


def _surface_alternatives(turn: TurnContext, report: FeasibilityReport) -> None:
    turn.scope.discard(report.unmapped)
    if turn.phase is not Phase.SCOPING:
        turn.move(Phase.SCOPING, "scope_infeasible")
    pending = turn.scope.missing[0] if turn.scope.missing else None
    question = prompts.question_template(pending, turn.ctx.catalog) if pending else None
    turn.say(
        prompts.render_alternatives(report, question),
        "alternatives",
        unmapped=list(report.unmapped),
        alternatives=report.alternatives,
        asked_field=pending,
    )


async def finalize_scope(turn: TurnContext) -> None:
    """Validate a complete scope and either summarize it or surface alternatives."""
    apply_optional_defaults(turn.scope)
    report = validate_scope(turn.ctx.catalog, turn.scope)
    turn.report = report
    if not report.feasible:
        _surface_alternatives(turn, report)
        return
    if turn.phase is not Phase.VALIDATING:
        turn.move(Phase.VALIDATING, "scope_feasible")
    turn.say(prompts.render_summary(turn.scope, report), "summary", complexity=report.complexity.value)


class PhaseHandler:
    phase: Phase

    async def handle(self, turn: TurnContext) -> None:
        raise NotImplementedError


class GreetingHandler(PhaseHandler):
    phase = Phase.GREETING

    async def handle(self, turn: TurnContext) -> None:
        if turn.signals.malformed:
            redirect(turn)
            return
        if turn.signals.intent:
            turn.scope.merge(turn.extracted)
            turn.move(Phase.SCOPING, "intent_detected")
            if turn.scope.is_complete:
                await finalize_scope(turn)
            else:
                await ask_missing(turn)
            return
        if turn.signals.greeting:
            turn.say(prompts.WELCOME_MESSAGE, "welcome")
            return
        redirect(turn)


class ScopingHandler(PhaseHandler):
    phase = Phase.SCOPING

    async def handle(self, turn: TurnContext) -> None:
        if turn.signals.malformed:
            redirect(turn)
            return
        if not turn.extracted.is_empty:
            turn.scope.merge(turn.extracted)
        elif not (turn.scope.is_complete and turn.signals.affirmative):
            redirect(turn)
            return
        if turn.scope.is_complete:
            await finalize_scope(turn)
        else:
            await ask_missing(turn)


class ValidatingHandler(PhaseHandler):
    phase = Phase.VALIDATING

    async def handle(self, turn: TurnContext) -> None:
        if turn.signals.malformed:
            turn.say(prompts.VALIDATING_REDIRECT_MESSAGE, "redirect")
            return
        if not turn.extracted.is_empty:
            # New details reopen validation instead of deploying a stale summary.
            turn.scope.merge(turn.extracted)
            await finalize_scope(turn)
            return
        if turn.signals.affirmative:
            turn.move(Phase.CREATING, "user_confirmed")
            await CreatingHandler().handle(turn)
            return
        if turn.signals.negative:
            turn.move(Phase.SCOPING, "user_declined")
            turn.say(prompts.DECLINED_MESSAGE, "question")
            return
        turn.say(prompts.VALIDATING_REDIRECT_MESSAGE, "redirect")


class CreatingHandler(PhaseHandler):
    phase = Phase.CREATING

    async def handle(self, turn: TurnContext) -> None:
        ctx = turn.ctx
        apply_optional_defaults(turn.scope)
        report = validate_scope(ctx.catalog, turn.scope)
        turn.report = report
        if not report.feasible:
            _surface_alternatives(turn, report)
            return

        try:
            slot = await SlotAllocator(ctx).acquire_slot(turn.tenant_id)
        except CapacityExceeded:
            turn.move(Phase.VALIDATING, "capacity_exceeded")
            turn.say(prompts.CAPACITY_MESSAGE, "capacity")
            return

        try:
            workflow = await DeploymentCoordinator(ctx).deploy(
                turn.tenant_id, turn.session_id, turn.scope, slot, report
            )
        except EngineValidationError as exc:
            reason = str(exc)
            # The rejected row is gone; a tenant with nothing else deployed hands the slot back.
            await DeploymentCoordinator(ctx).release_unused_slot(turn.tenant_id)
            turn.move(Phase.FAILED, "engine_rejected")
            turn.move(Phase.SCOPING, "reopened_for_correction")
            turn.say(
                prompts.render_engine_rejected(reason),
                "engine_rejected",
                reason=reason,
                status_code=exc.status_code,
            )
            return
        except DeploymentFailed as exc:
            turn.move(Phase.FAILED, "deployment_failed")
            turn.say(prompts.render_deployment_failed(str(exc)), "deployment_failed", reason=str(exc))
            return

        turn.workflow_id = workflow.id
        turn.move(Phase.COMPLETED, "deployed")
        turn.say(
            prompts.render_deployed(workflow.to_dict(), slot.id),
            "deployed",
            workflow_id=workflow.id,
            slot_id=slot.id,
            engine_workflow_id=workflow.engine_workflow_id,
        )


class FailedHandler(PhaseHandler):
    phase = Phase.FAILED

    async def handle(self, turn: TurnContext) -> None:
        turn.move(Phase.SCOPING, "reopened_for_correction")
        if turn.signals.malformed:
            redirect(turn)
            return
        if not turn.extracted.is_empty:
            turn.scope.merge(turn.extracted)
        if turn.scope.is_complete:
            await finalize_scope(turn)
        else:
            await ask_missing(turn)


# Closed dispatch table: completed and cancelled sessions never reach a handler.
PHASE_HANDLERS: dict[Phase, type[PhaseHandler]] = {
    Phase.GREETING: GreetingHandler,
    Phase.SCOPING: ScopingHandler,
    Phase.VALIDATING: ValidatingHandler,
    Phase.CREATING: CreatingHandler,
    Phase.FAILED: FailedHandler,
}


def signals_to_state(signals: MessageSignals) -> dict[str, bool]:
    return asdict(signals)
