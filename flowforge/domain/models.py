from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite dev/test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class ConversationSession(Base):
    __tablename__ = "conversation_sessions"
    __table_args__ = (
        Index("ix_conversation_sessions_tenant_phase", "tenant_id", "phase"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    phase: Mapped[str] = mapped_column(String)
    scope_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Ordered phase transitions so failed/cancelled paths stay inspectable.
    transitions_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    workflow_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Optimistic concurrency guard for turns racing across processes.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_conversation_turns_seq"),
    )

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String, ForeignKey("conversation_sessions.id"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    role: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("project_number", "user_slot", name="uq_slots_matrix"),
        # At most one active slot per tenant; NULLs (unassigned) never collide.
        UniqueConstraint("assigned_tenant_id", name="uq_slots_assigned_tenant"),
        Index("ix_slots_status_project", "status", "project_number"),
    )

    # Stable tag used to label engine workflows, e.g. p03-s05.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    project_number: Mapped[int] = mapped_column(Integer)
    user_slot: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="available")
    assigned_tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    # Bumped on every status change; the compare-and-swap column for claims.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SlotMetadata(Base):
    __tablename__ = "slot_metadata"

    slot_id: Mapped[str] = mapped_column(String, ForeignKey("slots.id"), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    metadata_hash: Mapped[str] = mapped_column(String)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SlotMetadataArchive(Base):
    __tablename__ = "slot_metadata_archive"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    slot_id: Mapped[str] = mapped_column(String, ForeignKey("slots.id"), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SlotAuditEntry(Base):
    __tablename__ = "slot_audit"
    __table_args__ = (
        Index("ix_slot_audit_slot_id_id", "slot_id", "id"),
    )

    # Monotonic id gives a total order per slot regardless of clock resolution.
    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    slot_id: Mapped[str] = mapped_column(String, ForeignKey("slots.id"))
    # Null for warnings that cannot be attributed to a tenant.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Workflow(Base):
    __tablename__ = "workflows"
    __table_args__ = (
        Index("ix_workflows_tenant_status", "tenant_id", "deployment_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    slot_id: Mapped[str] = mapped_column(String, ForeignKey("slots.id"), index=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String)
    definition_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    deployment_status: Mapped[str] = mapped_column(String, default="pending")
    engine_workflow_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
