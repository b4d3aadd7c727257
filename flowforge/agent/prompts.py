from __future__ import annotations

from typing import Any

from flowforge.domain.scope import FeasibilityReport, ScopeDraft
from flowforge.services.catalog import FIELD_KINDS, CapabilityCatalog


SYSTEM_PROMPT = (
    "You are FlowForge, an assistant that turns plain-language requests into automations. "
    "Ask exactly one short, friendly question to collect the missing detail named below. "
    "Do not ask about anything else and do not propose a full workflow."
)

WELCOME_MESSAGE = (
    "Hi! I can build and deploy automations for you. "
    "Tell me what you would like to automate, for example: "
    "\"every morning, send me an email summary of new form submissions\"."
)

REDIRECT_MESSAGE = (
    "I can only help with building automations. "
    "Describe what should start the workflow, what it should do and where the results should go."
)

_FIELD_QUESTIONS = {
    "trigger": "What should start this automation?",
    "actions": "What should the automation do each time it runs?",
    "outputs": "Where should the results be delivered?",
}

_FIELD_LABELS = {
    "trigger": "Trigger",
    "actions": "Actions",
    "data_sources": "Data sources",
    "conditions": "Conditions",
    "outputs": "Outputs",
}


def _examples(catalog: CapabilityCatalog, field: str, limit: int = 3) -> list[str]:
    return [entry.id for entry in catalog.by_kind(FIELD_KINDS[field])[:limit]]


def question_template(field: str, catalog: CapabilityCatalog) -> str:
    examples = _examples(catalog, field)
    question = _FIELD_QUESTIONS[field]
    if examples:
        question += f" For example: {', '.join(examples)}."
    return question


def build_question_messages(
    field: str,
    scope: ScopeDraft,
    history: list[dict[str, Any]],
    user_message: str,
    catalog: CapabilityCatalog,
) -> list[dict[str, str]]:
    known = {name: value for name, value in scope.to_dict().items() if value and name != "missing"}
    system_prompt = (
        f"{SYSTEM_PROMPT}\n\nMissing detail: {field}."
        f"\nKnown so far: {known or 'nothing yet'}."
        f"\nSupported options: {', '.join(_examples(catalog, field, limit=8))}."
    )
    messages = [{"role": "system", "content": system_prompt}]
    # Agent turns map onto the model's assistant role.
    for msg in history[-6:]:
        role = "assistant" if msg.get("role") == "agent" else "user"
        messages.append({"role": role, "content": str(msg.get("content", ""))})
    messages.append({"role": "user", "content": user_message})
    return messages


def _describe(scope: ScopeDraft) -> list[str]:
    lines = []
    for name in ("trigger", "data_sources", "conditions", "actions", "outputs"):
        value = getattr(scope, name)
        if isinstance(value, list):
            if not value:
                if name in scope.defaults_applied:
                    lines.append(f"- {_FIELD_LABELS[name]}: engine defaults")
                continue
            value = ", ".join(value)
        lines.append(f"- {_FIELD_LABELS[name]}: {value}")
    return lines


def render_summary(scope: ScopeDraft, report: FeasibilityReport) -> str:
    lines = ["Here is the automation I am ready to build:"]
    lines.extend(_describe(scope))
    lines.append(f"Estimated complexity: {report.complexity.value}.")
    for warning in report.warnings:
        lines.append(f"Note: {warning}.")
    lines.append("Shall I create it? Reply yes to deploy, or tell me what to change.")
    return "\n".join(lines)


def render_alternatives(report: FeasibilityReport, next_question: str | None) -> str:
    lines = ["Some parts of this automation are not supported by the execution engine:"]
    for term in report.unmapped:
        options = report.alternatives.get(term) or []
        suggestion = f" Closest supported options: {', '.join(options)}." if options else ""
        lines.append(f"- '{term}' has no match.{suggestion}")
    if next_question:
        lines.append(next_question)
    return "\n".join(lines)


def render_deployed(workflow: dict[str, Any], slot_id: str) -> str:
    return (
        f"Your automation \"{workflow['name']}\" is deployed (workflow {workflow['id']}, slot {slot_id}). "
        "Activate it whenever you are ready."
    )


CAPACITY_MESSAGE = (
    "All execution slots are busy right now, so I could not create the automation. "
    "Please try again later; your request is saved and I only need a yes to retry."
)
DECLINED_MESSAGE = "No problem. What would you like to change?"
VALIDATING_REDIRECT_MESSAGE = "Reply yes to deploy this automation, or tell me what you would like to change."


def render_engine_rejected(reason: str) -> str:
    return (
        f"The execution engine rejected the workflow: {reason}. "
        "Let's adjust the request; tell me what to change and I will validate it again."
    )


def render_deployment_failed(reason: str) -> str:
    return (
        f"Deployment failed because the execution engine is unavailable ({reason}). "
        "Send another message to retry once it is back."
    )
