"""Pydantic V2 domain models for the approval engine."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from approval_core.enums import (
    EntityType,
    OrgRole,
    Permission,
    ResourceType,
    ScopeType,
    StepUpOperation,
    VoteStatus,
    VoteType,
    WorkflowStatus,
    WorkflowTemplateStatus,
)
from approval_core.errors import ErrorCode

VOTE_REASON_MAX_LENGTH = 1024


def _utcnow() -> datetime:
    return datetime.now(UTC)


def voter_key(entity_type: EntityType, subject_id: str) -> str:
    """Identifier unique across users and agents sharing an id."""
    return f"{entity_type}:{subject_id}"


# ─── Scopes ──────────────────────────────────────────────


class OrgScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["org"] = "org"


class SpaceScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["space"] = "space"
    space_id: str = Field(min_length=1)


class GroupScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["group"] = "group"
    group_id: str = Field(min_length=1)


class WorkflowTemplateScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["workflow_template"] = "workflow_template"
    workflow_template_id: str = Field(min_length=1)


Scope = Annotated[OrgScope | SpaceScope | GroupScope | WorkflowTemplateScope, Field(discriminator="type")]


# ─── Roles ───────────────────────────────────────────────


class Role(BaseModel):
    """A catalog role bound to a scope.

    Two roles are the same assignment when name and scope are equal.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    name: str = Field(min_length=1, max_length=100)
    resource_type: ResourceType
    scope: Scope
    permissions: frozenset[Permission]

    @property
    def scope_type(self) -> ScopeType:
        return ScopeType(self.scope.type)

    @property
    def key(self) -> tuple[str, Scope]:
        return (self.name, self.scope)


class RoleTemplate(BaseModel):
    """Unbound system role definition."""

    model_config = ConfigDict(frozen=True)

    name: str
    resource_type: ResourceType
    scope_type: ScopeType
    permissions: frozenset[Permission]


class RoleRequest(BaseModel):
    """Role assignment request: a catalog role name applied to a scope."""

    name: str = Field(min_length=1, max_length=100)
    scope: Scope


# ─── Approval rules ──────────────────────────────────────


class GroupRequirementRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["GROUP_REQUIREMENT"] = "GROUP_REQUIREMENT"
    group_id: str
    min_count: int
    require_high_privilege: bool = False


class AndRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["AND"] = "AND"
    rules: tuple[ApprovalRule, ...]


class OrRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["OR"] = "OR"
    rules: tuple[ApprovalRule, ...]


ApprovalRule = Annotated[GroupRequirementRule | AndRule | OrRule, Field(discriminator="type")]

AndRule.model_rebuild()
OrRule.model_rebuild()


# ─── Templates, workflows, votes ─────────────────────────


class WorkflowTemplate(BaseModel):
    """Versioned approval template. Workflows snapshot its rule at creation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(min_length=1, max_length=512)
    description: str = Field(default="", max_length=2048)
    version: int = Field(default=1, ge=1)
    space_id: str = Field(min_length=1)
    status: WorkflowTemplateStatus = Field(default=WorkflowTemplateStatus.ACTIVE)
    approval_rule: ApprovalRule
    default_expires_in_hours: int | None = None
    allow_voting_on_deprecated_template: bool = True
    created_by: str = Field(min_length=1, max_length=200)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def accepts_votes(self) -> bool:
        return self.status == WorkflowTemplateStatus.ACTIVE or self.allow_voting_on_deprecated_template


class Workflow(BaseModel):
    """A resource whose state transition is gated by its approval rule."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(min_length=1, max_length=512)
    description: str = Field(default="", max_length=2048)
    status: WorkflowStatus = Field(default=WorkflowStatus.PENDING)
    template_id: uuid.UUID
    approval_rule: ApprovalRule
    expires_at: datetime
    recalculation_required: bool = False
    occ: int = 0
    created_by: str = Field(min_length=1, max_length=200)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at


class Vote(BaseModel):
    """An immutable ledger entry. The same voter may appear several times."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    workflow_id: uuid.UUID
    voter_id: str = Field(min_length=1, max_length=200)
    voter_type: EntityType
    vote_type: VoteType
    voted_for_groups: tuple[str, ...] = ()
    reason: str | None = Field(default=None, max_length=VOTE_REASON_MAX_LENGTH)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def voter_key(self) -> str:
        return voter_key(self.voter_type, self.voter_id)


# ─── Identities and step-up ──────────────────────────────


class StepUpClaim(BaseModel):
    """Verified step-up claim presented alongside a request."""

    operation: StepUpOperation
    resource: str
    jti: str


class StepUpContext(BaseModel):
    """Single-use privileged authorization context. Existence implies unconsumed."""

    jti: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject_id: str
    operation: StepUpOperation
    resource: str
    created_at: datetime = Field(default_factory=_utcnow)


class Identity(BaseModel):
    """Authenticated user or agent, with the roles it holds."""

    subject_id: str
    entity_type: EntityType = EntityType.USER
    org_role: OrgRole = OrgRole.MEMBER
    roles: tuple[Role, ...] = ()
    step_up: StepUpClaim | None = None
    is_authenticated: bool = True

    @property
    def is_org_admin(self) -> bool:
        return self.org_role == OrgRole.ADMIN

    @property
    def voter_key(self) -> str:
        return voter_key(self.entity_type, self.subject_id)


class Entity(BaseModel):
    """Persisted user or agent role holder."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_type: EntityType
    org_role: OrgRole = OrgRole.MEMBER
    roles: list[Role] = Field(default_factory=list)
    occ: int = 0


class CanVoteResult(BaseModel):
    """Answer to "may this identity vote on this workflow right now"."""

    can_vote: bool
    vote_status: VoteStatus
    cant_vote_reason: ErrorCode | None = None
    require_high_privilege: bool = False
