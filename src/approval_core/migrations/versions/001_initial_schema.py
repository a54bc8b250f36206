"""Initial schema: entities, group memberships, templates, workflows, votes, audit.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_APPEND_ONLY_TABLES = ("votes", "audit_events")


def upgrade() -> None:
    # Role holders
    op.create_table(
        "entities",
        sa.Column("id", sa.String(200), primary_key=True),
        sa.Column("entity_type", sa.String(20), primary_key=True),
        sa.Column("org_role", sa.String(20), nullable=False, server_default="member"),
        sa.Column("roles", JSONB, nullable=False, server_default="[]"),
        sa.Column("occ", sa.BigInteger, nullable=False, server_default="0"),
    )

    op.create_table(
        "group_memberships",
        sa.Column("group_id", sa.String(100), primary_key=True),
        sa.Column("entity_type", sa.String(20), primary_key=True, server_default="user"),
        sa.Column("subject_id", sa.String(200), primary_key=True),
    )
    op.create_index("ix_group_memberships_subject", "group_memberships", ["entity_type", "subject_id"])

    # Workflow templates
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("space_id", sa.String(100), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="ACTIVE"),
        sa.Column("approval_rule", JSONB, nullable=False),
        sa.Column("default_expires_in_hours", sa.Integer),
        sa.Column("allow_voting_on_deprecated_template", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("created_by", sa.String(200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("name", "version", name="uq_workflow_templates_name_version"),
    )
    op.create_index("ix_workflow_templates_space_id", "workflow_templates", ["space_id"])

    # Workflows
    op.create_table(
        "workflows",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("status", sa.String(30), nullable=False, server_default="PENDING"),
        sa.Column("template_id", sa.Uuid, sa.ForeignKey("workflow_templates.id"), nullable=False),
        sa.Column("approval_rule", JSONB, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recalculation_required", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("occ", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_workflows_status_template", "workflows", ["status", "template_id"])
    op.create_index("ix_workflows_status_expires", "workflows", ["status", "expires_at"])

    # Vote ledger
    op.create_table(
        "votes",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("workflow_id", sa.Uuid, sa.ForeignKey("workflows.id"), nullable=False),
        sa.Column("voter_id", sa.String(200), nullable=False),
        sa.Column("voter_type", sa.String(20), nullable=False),
        sa.Column("vote_type", sa.String(20), nullable=False),
        sa.Column("voted_for_groups", JSONB, nullable=False, server_default="[]"),
        sa.Column("reason", sa.String(1024)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_votes_workflow_id", "votes", ["workflow_id"])
    op.create_index("ix_votes_workflow_voter", "votes", ["workflow_id", "voter_id"])

    # Audit events
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("sequence", sa.BigInteger, sa.Identity(always=True), nullable=False, unique=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(200), nullable=False),
        sa.Column("actor_id", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("details", JSONB, server_default="{}"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.Column("event_hash", sa.String(64), nullable=False),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])
    op.create_index("ix_audit_events_actor_id", "audit_events", ["actor_id"])
    op.create_index("ix_audit_events_occurred", "audit_events", ["occurred_at"])

    # Votes and audit events are append-only
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_ledger_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only: % operations are not allowed', TG_TABLE_NAME, TG_OP;
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)
    for table in _APPEND_ONLY_TABLES:
        op.execute(f"""
            CREATE TRIGGER trg_{table}_immutable
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION prevent_ledger_mutation();
        """)


def downgrade() -> None:
    for table in _APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table}")
    op.execute("DROP FUNCTION IF EXISTS prevent_ledger_mutation()")
    op.drop_table("audit_events")
    op.drop_table("votes")
    op.drop_table("workflows")
    op.drop_table("workflow_templates")
    op.drop_table("group_memberships")
    op.drop_table("entities")
