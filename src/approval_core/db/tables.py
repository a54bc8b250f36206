"""SQLAlchemy 2.0 ORM mapped classes for the approval engine."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class EntityRow(Base):
    """Users and agents as role holders. Roles are stored inline."""

    __tablename__ = "entities"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    org_role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    roles: Mapped[list[dict[str, object]]] = mapped_column(JSONB, nullable=False, default=list)
    occ: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class GroupMembershipRow(Base):
    __tablename__ = "group_memberships"

    group_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(20), primary_key=True, default="user")
    subject_id: Mapped[str] = mapped_column(String(200), primary_key=True)

    __table_args__ = (Index("ix_group_memberships_subject", "entity_type", "subject_id"),)


class WorkflowTemplateRow(Base):
    __tablename__ = "workflow_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    space_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="ACTIVE")
    approval_rule: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False)
    default_expires_in_hours: Mapped[int | None] = mapped_column(Integer)
    allow_voting_on_deprecated_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("name", "version", name="uq_workflow_templates_name_version"),)


class WorkflowRow(Base):
    __tablename__ = "workflows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="PENDING")
    template_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("workflow_templates.id"), nullable=False)
    approval_rule: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recalculation_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    occ: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_workflows_status_template", "status", "template_id"),
        Index("ix_workflows_status_expires", "status", "expires_at"),
    )


class VoteRow(Base):
    """Append-only vote ledger."""

    __tablename__ = "votes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workflow_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("workflows.id"), nullable=False, index=True)
    voter_id: Mapped[str] = mapped_column(String(200), nullable=False)
    voter_type: Mapped[str] = mapped_column(String(20), nullable=False)
    vote_type: Mapped[str] = mapped_column(String(20), nullable=False)
    voted_for_groups: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    reason: Mapped[str | None] = mapped_column(String(1024))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (Index("ix_votes_workflow_voter", "workflow_id", "voter_id"),)


class AuditEventRow(Base):
    """Append-only audit events with hash chain."""

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sequence: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[dict[str, object] | None] = mapped_column(JSONB, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (Index("ix_audit_events_occurred", "occurred_at"),)
    __mapper_args__ = {"eager_defaults": True}
