from __future__ import annotations


class FlowForgeError(Exception):
    """Base error for FlowForge."""


class ProviderConfigError(FlowForgeError):
    """Missing or invalid provider configuration."""


class LLMTimeoutError(FlowForgeError):
    """LLM completion timed out."""


class LLMError(FlowForgeError):
    """LLM completion failure."""


class DatabaseError(FlowForgeError):
    """Database layer failure."""


class ValidationError(FlowForgeError):
    """Scope element could not be mapped onto the capability catalog."""

    def __init__(self, message: str, *, unmapped: list[str] | None = None) -> None:
        super().__init__(message)
        self.unmapped = list(unmapped or [])


class SessionTenantMismatchError(FlowForgeError):
    """Session tenant mismatch; never mutate tenant_id for an existing session."""


class SessionClosedError(FlowForgeError):
    """Session already completed or cancelled."""


class SessionNotFoundError(FlowForgeError):
    """Conversation session does not exist for this tenant."""


class ConcurrentTurnError(FlowForgeError):
    """Another turn for the same session committed first."""


class AllocationError(FlowForgeError):
    """Slot allocation failure."""


class AllocationConflict(AllocationError):
    """Lost a race for a candidate slot."""


class CapacityExceeded(AllocationError):
    """No candidate slot survived verification."""


class ConsistencyViolation(AllocationError):
    """A verification layer rejected a candidate slot."""

    def __init__(self, layer: str, slot_id: str, reason: str) -> None:
        super().__init__(f"{layer} rejected {slot_id}: {reason}")
        self.layer = layer
        self.slot_id = slot_id
        self.reason = reason


class SlotNotFoundError(AllocationError):
    """Unknown slot id."""


class EngineError(FlowForgeError):
    """Execution engine request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EngineTransientError(EngineError):
    """5xx, timeout or network failure; safe to retry."""


class EngineValidationError(EngineError):
    """4xx rejection of a request; retrying will not help."""


class DeploymentFailed(FlowForgeError):
    """Deployment failed after exhausting transient retries."""


class WorkflowNotFoundError(FlowForgeError):
    """Workflow does not exist for this tenant."""


class WorkflowNotDeployedError(FlowForgeError):
    """Workflow has no live engine counterpart yet."""
