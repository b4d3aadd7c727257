from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Phase(str, Enum):
    GREETING = "greeting"
    SCOPING = "scoping"
    VALIDATING = "validating"
    CREATING = "creating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Archived phases; completed and cancelled never accept another turn.
ARCHIVED_PHASES = frozenset({Phase.COMPLETED, Phase.CANCELLED, Phase.FAILED})
CLOSED_PHASES = frozenset({Phase.COMPLETED, Phase.CANCELLED})


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    ACTIVE = "active"
    # Quarantined out of the pool until an operator restores it.
    ARCHIVED = "archived"


class AuditAction(str, Enum):
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    VERIFIED = "verified"
    WARNING = "warning"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


REQUIRED_FIELDS = ("trigger", "actions", "outputs")
OPTIONAL_FIELDS = ("data_sources", "conditions")


@dataclass
class ScopeDraft:
    """Structured automation request built up across conversation turns."""

    trigger: str | None = None
    actions: list[str] = field(default_factory=list)
    data_sources: list[str] = field(default_factory=list)
    conditions: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    defaults_applied: list[str] = field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing

    @property
    def is_empty(self) -> bool:
        return not (self.trigger or self.actions or self.data_sources or self.conditions or self.outputs)

    def merge(self, other: "ScopeDraft") -> list[str]:
        """Fold newly stated fields into this draft and return the names that changed."""
        changed: list[str] = []
        if other.trigger and other.trigger != self.trigger:
            self.trigger = other.trigger
            changed.append("trigger")
        for name in ("actions", "data_sources", "conditions", "outputs"):
            current: list[str] = getattr(self, name)
            added = [value for value in getattr(other, name) if value not in current]
            if added:
                current.extend(added)
                changed.append(name)
        return changed

    def discard(self, values: list[str]) -> None:
        # Drop unmapped values so scoping asks for them again.
        if self.trigger in values:
            self.trigger = None
        for name in ("actions", "data_sources", "conditions", "outputs"):
            setattr(self, name, [value for value in getattr(self, name) if value not in values])

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["missing"] = self.missing
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ScopeDraft":
        payload = payload or {}
        return cls(
            trigger=payload.get("trigger"),
            actions=list(payload.get("actions") or []),
            data_sources=list(payload.get("data_sources") or []),
            conditions=list(payload.get("conditions") or []),
            outputs=list(payload.get("outputs") or []),
            defaults_applied=list(payload.get("defaults_applied") or []),
        )


@dataclass(frozen=True)
class MappedCapability:
    field: str
    term: str
    capability_id: str
    node_type: str
    match: str  # exact | keyword


@dataclass
class FeasibilityReport:
    feasible: bool
    mapped: list[MappedCapability] = field(default_factory=list)
    unmapped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    complexity: Complexity = Complexity.SIMPLE
    alternatives: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feasible": self.feasible,
            "mapped": [asdict(item) for item in self.mapped],
            "unmapped": list(self.unmapped),
            "warnings": list(self.warnings),
            "complexity": self.complexity.value,
            "alternatives": {term: list(ids) for term, ids in self.alternatives.items()},
        }
