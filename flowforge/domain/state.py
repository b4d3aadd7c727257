from __future__ import annotations

from typing import Any, Optional, TypedDict


class ConversationState(TypedDict, total=False):
    session_id: str
    tenant_id: str
    user_message: str
    phase: str
    scope: dict[str, Any]
    # Fields newly stated in this message, plus intent/greeting/affirm flags.
    extracted: dict[str, Any]
    signals: dict[str, bool]
    history: list[dict[str, Any]]
    reply: Optional[str]
    reply_metadata: dict[str, Any]
    transitions: list[dict[str, Any]]
    report: Optional[dict[str, Any]]
    workflow_id: Optional[str]
