"""API request/response schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from approval_core.enums import (
    EntityType,
    OrgRole,
    Permission,
    ResourceType,
    ScopeType,
    VoteStatus,
    VoteType,
    WorkflowStatus,
    WorkflowTemplateStatus,
)
from approval_core.errors import ErrorCode
from approval_core.models import ApprovalRule, Role, RoleRequest
from pydantic import BaseModel, Field

# ─── Role schemas ────────────────────────────────────────


class EntityKind(StrEnum):
    """Path segment naming the kind of role holder."""

    USERS = "users"
    AGENTS = "agents"

    @property
    def entity_type(self) -> EntityType:
        return EntityType.USER if self is EntityKind.USERS else EntityType.AGENT


class RolesRequest(BaseModel):
    roles: list[RoleRequest] = Field(min_length=1)


class EntityRolesResponse(BaseModel):
    id: str
    entity_type: EntityType
    org_role: OrgRole
    roles: list[Role]


class RoleTemplateResponse(BaseModel):
    name: str
    resource_type: ResourceType
    scope_type: ScopeType
    permissions: list[Permission]


# ─── Workflow template schemas ───────────────────────────


class CreateTemplateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=512)
    description: str = Field(default="", max_length=2048)
    space_id: str = Field(min_length=1, max_length=100)
    approval_rule: dict[str, Any]
    default_expires_in_hours: int | None = None


class UpdateTemplateRequest(BaseModel):
    description: str | None = Field(default=None, max_length=2048)
    approval_rule: dict[str, Any] | None = None
    default_expires_in_hours: int | None = None


class DeprecateTemplateRequest(BaseModel):
    cancel_workflows: bool = False


class TemplateResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    version: int
    space_id: str
    status: WorkflowTemplateStatus
    approval_rule: ApprovalRule
    default_expires_in_hours: int | None
    allow_voting_on_deprecated_template: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


# ─── Workflow schemas ────────────────────────────────────


class CreateWorkflowRequest(BaseModel):
    template_id: uuid.UUID
    name: str = Field(min_length=1, max_length=512)
    description: str = Field(default="", max_length=2048)
    expires_in_hours: int | None = None


class WorkflowResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    status: WorkflowStatus
    template_id: uuid.UUID
    approval_rule: ApprovalRule
    expires_at: datetime
    recalculation_required: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


class CanVoteResponse(BaseModel):
    can_vote: bool
    vote_status: VoteStatus
    cant_vote_reason: ErrorCode | None = None
    require_high_privilege: bool


# ─── Vote schemas ────────────────────────────────────────


class CastVoteRequest(BaseModel):
    # Plain string so an unknown value surfaces as VOTE_TYPE_INVALID
    vote_type: str
    voted_for_groups: list[str] = Field(default_factory=list)
    reason: str | None = None


class VoteResponse(BaseModel):
    id: uuid.UUID
    workflow_id: uuid.UUID
    voter_id: str
    voter_type: EntityType
    vote_type: VoteType
    voted_for_groups: list[str]
    reason: str | None
    created_at: datetime


# ─── Audit schemas ───────────────────────────────────────


class AuditEventResponse(BaseModel):
    id: uuid.UUID
    sequence: int | None = None
    event_type: str
    entity_type: str
    entity_id: str
    actor_id: str
    description: str
    details: dict[str, Any]
    occurred_at: datetime
    previous_hash: str
    event_hash: str


class ChainVerificationResponse(BaseModel):
    valid: bool
    events_checked: int
    first_invalid_event_id: uuid.UUID | None = None


# ─── Errors ──────────────────────────────────────────────


class ErrorResponse(BaseModel):
    code: ErrorCode
    detail: str
