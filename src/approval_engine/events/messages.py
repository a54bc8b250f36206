"""Events published to NATS JetStream when workflows and votes change."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import ClassVar

from pydantic import BaseModel, Field

from approval_core.enums import EntityType, VoteType, WorkflowStatus  # noqa: TC001

SUBJECT_PREFIX = "approvals"


class ApprovalEvent(BaseModel):
    """Base for published events. ``event_id`` doubles as the JetStream message id."""

    subject: ClassVar[str]

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    workflow_id: uuid.UUID


class WorkflowCreated(ApprovalEvent):
    subject: ClassVar[str] = f"{SUBJECT_PREFIX}.workflows.created"

    template_id: uuid.UUID
    template_version: int
    expires_at: datetime
    created_by: str


class WorkflowStatusChanged(ApprovalEvent):
    subject: ClassVar[str] = f"{SUBJECT_PREFIX}.workflows.status_changed"

    template_id: uuid.UUID
    previous_status: WorkflowStatus
    status: WorkflowStatus
    occ: int
    actor_id: str


class VoteCast(ApprovalEvent):
    subject: ClassVar[str] = f"{SUBJECT_PREFIX}.votes.cast"

    vote_id: uuid.UUID
    voter_id: str
    voter_type: EntityType
    vote_type: VoteType
    voted_for_groups: tuple[str, ...] = ()
    occ: int
