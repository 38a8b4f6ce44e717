"""Consent workflow: proposals, guardian membership and audit tables.

Revision ID: f1a2b3c4d5e6
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "f1a2b3c4d5e6"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_DISSOLUTION_WHERE = (
    "subject_type = 'dissolution' "
    "AND status IN ('pending_approval', 'pending_acknowledgment', 'cooling_period')"
)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("consent_proposals"):
        op.create_table(
            "consent_proposals",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("family_id", sa.String(length=128), nullable=False),
            sa.Column("subject_type", sa.String(), nullable=False),
            sa.Column("subject_key", sa.String(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("proposer_id", sa.String(length=128), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="pending_approval"),
            sa.Column("is_emergency_increase", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("review_expires_at", sa.DateTime(), nullable=True),
            sa.Column("effective_at", sa.DateTime(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("resolved_by", sa.String(length=128), nullable=True),
            sa.Column("approver_id", sa.String(length=128), nullable=True),
            sa.Column("decline_reason", sa.String(length=500), nullable=True),
            sa.Column("cancelled_by_uid", sa.String(length=128), nullable=True),
            sa.Column("acknowledgments", sa.JSON(), nullable=True),
            sa.Column("supersedes_proposal_id", sa.Uuid(), nullable=True),
            sa.Column("superseded_by_id", sa.Uuid(), nullable=True),
            sa.Column("modification_note", sa.String(length=500), nullable=True),
            sa.Column("reverses_proposal_id", sa.Uuid(), nullable=True),
            sa.Column("disputed_by", sa.String(length=128), nullable=True),
            sa.Column("disputed_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_reason", sa.String(length=500), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.PrimaryKeyConstraint("id"),
        )
        for column in (
            "family_id",
            "subject_type",
            "subject_key",
            "proposer_id",
            "status",
            "expires_at",
            "effective_at",
            "supersedes_proposal_id",
            "reverses_proposal_id",
        ):
            op.create_index(op.f(f"ix_consent_proposals_{column}"), "consent_proposals", [column])
        op.create_index(
            "uq_consent_proposals_active_dissolution",
            "consent_proposals",
            ["family_id"],
            unique=True,
            postgresql_where=sa.text(ACTIVE_DISSOLUTION_WHERE),
            sqlite_where=sa.text(ACTIVE_DISSOLUTION_WHERE),
        )

    if not inspector.has_table("family_guardians"):
        op.create_table(
            "family_guardians",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("family_id", sa.String(length=128), nullable=False),
            sa.Column("guardian_id", sa.String(length=128), nullable=False),
            sa.Column("role", sa.String(), nullable=False, server_default="guardian"),
            sa.Column("permissions", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "family_id", "guardian_id", name="uq_family_guardians_family_guardian"
            ),
        )
        op.create_index(op.f("ix_family_guardians_family_id"), "family_guardians", ["family_id"])
        op.create_index(op.f("ix_family_guardians_guardian_id"), "family_guardians", ["guardian_id"])

    if not inspector.has_table("audit_entries"):
        op.create_table(
            "audit_entries",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("family_id", sa.String(length=128), nullable=False),
            sa.Column("action", sa.String(), nullable=False),
            sa.Column("entity_type", sa.String(), nullable=False, server_default=""),
            sa.Column("entity_id", sa.Uuid(), nullable=True),
            sa.Column("performed_by", sa.String(length=128), nullable=False),
            sa.Column("performed_at", sa.DateTime(), nullable=False),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(op.f("ix_audit_entries_family_id"), "audit_entries", ["family_id"])
        op.create_index(op.f("ix_audit_entries_action"), "audit_entries", ["action"])
        op.create_index(op.f("ix_audit_entries_entity_id"), "audit_entries", ["entity_id"])
        op.create_index(op.f("ix_audit_entries_performed_by"), "audit_entries", ["performed_by"])


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if inspector.has_table("audit_entries"):
        op.drop_table("audit_entries")
    if inspector.has_table("family_guardians"):
        op.drop_table("family_guardians")
    if inspector.has_table("consent_proposals"):
        op.drop_table("consent_proposals")
