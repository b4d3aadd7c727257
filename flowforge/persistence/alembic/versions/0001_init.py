"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversation_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("scope_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("transitions_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("workflow_id", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_conversation_sessions_tenant_id", "conversation_sessions", ["tenant_id"])
    op.create_index("ix_conversation_sessions_last_activity_at", "conversation_sessions", ["last_activity_at"])
    op.create_index("ix_conversation_sessions_tenant_phase", "conversation_sessions", ["tenant_id", "phase"])

    op.create_table(
        "conversation_turns",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(), sa.ForeignKey("conversation_sessions.id"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("session_id", "seq", name="uq_conversation_turns_seq"),
    )
    op.create_index("ix_conversation_turns_session_id", "conversation_turns", ["session_id"])

    op.create_table(
        "slots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("project_number", sa.Integer(), nullable=False),
        sa.Column("user_slot", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="available"),
        sa.Column("assigned_tenant_id", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_hash", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_number", "user_slot", name="uq_slots_matrix"),
        # One active slot per tenant; NULL tenant ids never collide.
        sa.UniqueConstraint("assigned_tenant_id", name="uq_slots_assigned_tenant"),
    )
    op.create_index("ix_slots_status_project", "slots", ["status", "project_number"])

    op.create_table(
        "slot_metadata",
        sa.Column("slot_id", sa.String(), sa.ForeignKey("slots.id"), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("metadata_hash", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_slot_metadata_tenant_id", "slot_metadata", ["tenant_id"])

    op.create_table(
        "slot_metadata_archive",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("slot_id", sa.String(), sa.ForeignKey("slots.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("metadata_hash", sa.String(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_slot_metadata_archive_slot_id", "slot_metadata_archive", ["slot_id"])

    op.create_table(
        "slot_audit",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("slot_id", sa.String(), sa.ForeignKey("slots.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_slot_audit_slot_id_id", "slot_audit", ["slot_id", "id"])
    op.create_index("ix_slot_audit_tenant_id", "slot_audit", ["tenant_id"])

    op.create_table(
        "workflows",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("slot_id", sa.String(), sa.ForeignKey("slots.id"), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("definition_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("deployment_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("engine_workflow_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workflows_tenant_id", "workflows", ["tenant_id"])
    op.create_index("ix_workflows_slot_id", "workflows", ["slot_id"])
    op.create_index("ix_workflows_engine_workflow_id", "workflows", ["engine_workflow_id"])
    op.create_index("ix_workflows_tenant_status", "workflows", ["tenant_id", "deployment_status"])


def downgrade() -> None:
    op.drop_index("ix_workflows_tenant_status", table_name="workflows")
    op.drop_index("ix_workflows_engine_workflow_id", table_name="workflows")
    op.drop_index("ix_workflows_slot_id", table_name="workflows")
    op.drop_index("ix_workflows_tenant_id", table_name="workflows")
    op.drop_table("workflows")

    op.drop_index("ix_slot_audit_tenant_id", table_name="slot_audit")
    op.drop_index("ix_slot_audit_slot_id_id", table_name="slot_audit")
    op.drop_table("slot_audit")

    op.drop_index("ix_slot_metadata_archive_slot_id", table_name="slot_metadata_archive")
    op.drop_table("slot_metadata_archive")

    op.drop_index("ix_slot_metadata_tenant_id", table_name="slot_metadata")
    op.drop_table("slot_metadata")

    op.drop_index("ix_slots_status_project", table_name="slots")
    op.drop_table("slots")

    op.drop_index("ix_conversation_turns_session_id", table_name="conversation_turns")
    op.drop_table("conversation_turns")

    op.drop_index("ix_conversation_sessions_tenant_phase", table_name="conversation_sessions")
    op.drop_index("ix_conversation_sessions_last_activity_at", table_name="conversation_sessions")
    op.drop_index("ix_conversation_sessions_tenant_id", table_name="conversation_sessions")
    op.drop_table("conversation_sessions")
