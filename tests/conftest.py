"""Shared test fixtures with in-memory mock repositories."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, Collection
from datetime import datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
from approval_core.audit import GENESIS_HASH, AuditEvent
from approval_core.enums import (
    AuditEventType,
    EntityType,
    OrgRole,
    StepUpOperation,
    WorkflowStatus,
    WorkflowTemplateStatus,
)
from approval_core.models import (
    Entity,
    Identity,
    Role,
    RoleRequest,
    SpaceScope,
    StepUpContext,
    Vote,
    Workflow,
    WorkflowTemplate,
    voter_key,
)
from approval_core.roles import bind_role
from approval_engine.domain.audit_service import AuditService
from approval_engine.domain.recalculation_service import RecalculationService
from approval_engine.domain.role_service import RoleService
from approval_engine.domain.step_up_service import StepUpService
from approval_engine.domain.template_service import TemplateService
from approval_engine.domain.vote_service import VoteService
from approval_engine.domain.workflow_service import WorkflowService
from approval_engine.events.messages import ApprovalEvent
from fastapi import FastAPI, Request
from httpx import AsyncClient

# ─── In-memory mock repositories ─────────────────────────


class MockEntityRepository:
    def __init__(self) -> None:
        self._store: dict[tuple[EntityType, str], Entity] = {}

    def add(self, entity: Entity) -> Entity:
        self._store[(entity.entity_type, entity.id)] = entity
        return entity

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        await asyncio.sleep(0)
        entity = self._store.get((entity_type, entity_id))
        return entity.model_copy(deep=True) if entity else None

    async def compare_and_swap_roles(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_occ: int,
        roles: list[Role],
    ) -> Entity | None:
        await asyncio.sleep(0)
        current = self._store.get((entity_type, entity_id))
        if current is None or current.occ != expected_occ:
            return None
        updated = current.model_copy(update={"roles": list(roles), "occ": current.occ + 1})
        self._store[(entity_type, entity_id)] = updated
        return updated


class MockGroupMembershipRepository:
    def __init__(self) -> None:
        self._groups: dict[str, set[str]] = {}

    def add(self, group_id: str, *subject_ids: str, entity_type: EntityType = EntityType.USER) -> None:
        self._groups.setdefault(group_id, set()).update(voter_key(entity_type, s) for s in subject_ids)

    def remove(self, group_id: str, subject_id: str, entity_type: EntityType = EntityType.USER) -> None:
        self._groups.get(group_id, set()).discard(voter_key(entity_type, subject_id))

    async def members_of(
        self,
        group_ids: Collection[str],
        voter_keys: Collection[str] | None = None,
    ) -> dict[str, set[str]]:
        await asyncio.sleep(0)
        result: dict[str, set[str]] = {}
        for group_id in group_ids:
            members = set(self._groups.get(group_id, set()))
            if voter_keys is not None:
                members &= set(voter_keys)
            if members:
                result[group_id] = members
        return result


class MockTemplateRepository:
    def __init__(self) -> None:
        self._store: dict[uuid.UUID, WorkflowTemplate] = {}

    async def create(self, template: WorkflowTemplate) -> WorkflowTemplate:
        await asyncio.sleep(0)
        self._store[template.id] = template
        return template

    async def get_by_id(self, template_id: uuid.UUID) -> WorkflowTemplate | None:
        await asyncio.sleep(0)
        return self._store.get(template_id)

    async def transition_status(
        self,
        template_id: uuid.UUID,
        expected: WorkflowTemplateStatus,
        status: WorkflowTemplateStatus,
        *,
        allow_voting_on_deprecated_template: bool | None = None,
    ) -> WorkflowTemplate | None:
        await asyncio.sleep(0)
        current = self._store.get(template_id)
        if current is None or current.status != expected:
            return None
        update: dict[str, Any] = {"status": status}
        if allow_voting_on_deprecated_template is not None:
            update["allow_voting_on_deprecated_template"] = allow_voting_on_deprecated_template
        updated = current.model_copy(update=update)
        self._store[template_id] = updated
        return updated

    async def list_templates(
        self,
        *,
        space_id: str | None = None,
        status: WorkflowTemplateStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowTemplate]:
        await asyncio.sleep(0)
        result = list(self._store.values())
        if space_id:
            result = [t for t in result if t.space_id == space_id]
        if status:
            result = [t for t in result if t.status == status]
        return result[offset : offset + limit]


class MockWorkflowRepository:
    """Workflow store with compare-and-swap.

    ``concurrent_writes`` simulates that many writers sneaking in before the
    next swaps: each such swap bumps ``occ`` behind the caller's back and fails.
    Flagging for recalculation has no version check, so those writers only
    push ``occ`` further ahead of it.
    """

    def __init__(self) -> None:
        self._store: dict[uuid.UUID, Workflow] = {}
        self.concurrent_writes = 0
        self.swaps = 0

    async def create(self, workflow: Workflow) -> Workflow:
        await asyncio.sleep(0)
        self._store[workflow.id] = workflow
        return workflow

    async def get_by_id(self, workflow_id: uuid.UUID) -> Workflow | None:
        await asyncio.sleep(0)
        return self._store.get(workflow_id)

    def put(self, workflow: Workflow) -> None:
        self._store[workflow.id] = workflow

    async def compare_and_swap(
        self,
        workflow_id: uuid.UUID,
        expected_occ: int,
        *,
        status: WorkflowStatus,
        recalculation_required: bool,
    ) -> Workflow | None:
        await asyncio.sleep(0)
        current = self._store.get(workflow_id)
        if current is None:
            return None
        if self.concurrent_writes > 0:
            self.concurrent_writes -= 1
            self._store[workflow_id] = current.model_copy(update={"occ": current.occ + 1})
            return None
        if current.occ != expected_occ:
            return None
        self.swaps += 1
        updated = current.model_copy(
            update={"status": status, "recalculation_required": recalculation_required, "occ": current.occ + 1}
        )
        self._store[workflow_id] = updated
        return updated

    async def mark_recalculation_required(self, workflow_id: uuid.UUID, now: datetime) -> Workflow | None:
        await asyncio.sleep(0)
        current = self._store.get(workflow_id)
        if current is None or current.status.is_terminal or current.is_expired(now):
            return None
        occ = current.occ + self.concurrent_writes + 1
        self.concurrent_writes = 0
        status = (
            WorkflowStatus.EVALUATION_IN_PROGRESS if current.status == WorkflowStatus.PENDING else current.status
        )
        updated = current.model_copy(
            update={"status": status, "recalculation_required": True, "occ": occ, "updated_at": now}
        )
        self._store[workflow_id] = updated
        return updated

    async def list_workflows(
        self,
        *,
        template_id: uuid.UUID | None = None,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Workflow]:
        await asyncio.sleep(0)
        result = list(self._store.values())
        if template_id:
            result = [w for w in result if w.template_id == template_id]
        if status:
            result = [w for w in result if w.status == status]
        return result[offset : offset + limit]

    async def list_non_terminal(self, *, template_id: uuid.UUID | None = None) -> list[Workflow]:
        await asyncio.sleep(0)
        return [
            w
            for w in self._store.values()
            if not w.status.is_terminal and (template_id is None or w.template_id == template_id)
        ]

    async def list_overdue(self, now: datetime, *, limit: int = 100) -> list[Workflow]:
        await asyncio.sleep(0)
        return [w for w in self._store.values() if not w.status.is_terminal and w.expires_at <= now][:limit]

    async def list_flagged(self, updated_before: datetime, *, limit: int = 100) -> list[Workflow]:
        await asyncio.sleep(0)
        return [
            w
            for w in self._store.values()
            if not w.status.is_terminal and w.recalculation_required and w.updated_at <= updated_before
        ][:limit]


class MockVoteRepository:
    def __init__(self) -> None:
        self._votes: list[Vote] = []

    async def create(self, vote: Vote) -> Vote:
        await asyncio.sleep(0)
        self._votes.append(vote)
        return vote

    async def list_by_workflow(self, workflow_id: uuid.UUID) -> list[Vote]:
        await asyncio.sleep(0)
        return [v for v in self._votes if v.workflow_id == workflow_id]

    async def has_voted(self, workflow_id: uuid.UUID, voter_id: str, voter_type: EntityType) -> bool:
        await asyncio.sleep(0)
        return any(
            v.workflow_id == workflow_id and v.voter_id == voter_id and v.voter_type == voter_type
            for v in self._votes
        )


class MockAuditRepository:
    """Append-only chain; appends link to the head without yielding in between."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []

    async def append(self, event: AuditEvent) -> AuditEvent:
        await asyncio.sleep(0)
        head = self._events[-1].event_hash if self._events else GENESIS_HASH
        linked = event.chained(head).model_copy(update={"sequence": len(self._events) + 1})
        self._events.append(linked)
        return linked

    def tamper(self, index: int, **changes: Any) -> None:
        self._events[index] = self._events[index].model_copy(update=changes)

    async def get_chain(self, *, limit: int = 1000) -> list[AuditEvent]:
        await asyncio.sleep(0)
        return self._events[:limit]

    async def list_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        await asyncio.sleep(0)
        result = list(reversed(self._events))
        if event_type:
            result = [e for e in result if e.event_type == event_type]
        if entity_id:
            result = [e for e in result if e.entity_id == entity_id]
        return result[offset : offset + limit]


class MockStepUpStore:
    def __init__(self) -> None:
        self._contexts: dict[str, StepUpContext] = {}
        self._active: dict[tuple[str, str, str], str] = {}

    async def save(self, context: StepUpContext, ttl_seconds: int) -> StepUpContext:
        await asyncio.sleep(0)
        key = (context.subject_id, str(context.operation), context.resource)
        active_jti = self._active.get(key)
        if active_jti in self._contexts:
            return self._contexts[active_jti]
        self._contexts[context.jti] = context
        self._active[key] = context.jti
        return context

    async def consume(self, subject_id: str, operation: StepUpOperation, resource: str, jti: str) -> bool:
        await asyncio.sleep(0)
        context = self._contexts.get(jti)
        if context is None or (context.subject_id, context.operation, context.resource) != (
            subject_id,
            operation,
            resource,
        ):
            return False
        del self._contexts[jti]
        return True


class MockRecalculationQueue:
    def __init__(self) -> None:
        self.jobs: list[tuple[uuid.UUID, int]] = []

    async def enqueue(self, workflow_id: uuid.UUID, occ: int) -> None:
        await asyncio.sleep(0)
        self.jobs.append((workflow_id, occ))


class MockEventPublisher:
    def __init__(self) -> None:
        self.events: list[ApprovalEvent] = []

    async def publish(self, event: ApprovalEvent) -> None:
        await asyncio.sleep(0)
        self.events.append(event)


# ─── Identities and ids ──────────────────────────────────

SPACE_ID = "space-finance"
GROUP_1 = "6f1c2a8e-0b51-4d7e-9a37-1f0d2c3b4a51"
GROUP_2 = "a0e7b3c4-5d6f-4a1b-8c2d-3e4f5a6b7c82"


@pytest.fixture
def admin() -> Identity:
    return Identity(subject_id="admin-1", org_role=OrgRole.ADMIN)


# ─── Fixtures ─────────────────────────────────────────────


@pytest.fixture
def audit_repo() -> MockAuditRepository:
    return MockAuditRepository()


@pytest.fixture
def entity_repo() -> MockEntityRepository:
    return MockEntityRepository()


@pytest.fixture
def membership_repo() -> MockGroupMembershipRepository:
    return MockGroupMembershipRepository()


@pytest.fixture
def template_repo() -> MockTemplateRepository:
    return MockTemplateRepository()


@pytest.fixture
def workflow_repo() -> MockWorkflowRepository:
    return MockWorkflowRepository()


@pytest.fixture
def vote_repo() -> MockVoteRepository:
    return MockVoteRepository()


@pytest.fixture
def step_up_store() -> MockStepUpStore:
    return MockStepUpStore()


@pytest.fixture
def queue() -> MockRecalculationQueue:
    return MockRecalculationQueue()


@pytest.fixture
def publisher() -> MockEventPublisher:
    return MockEventPublisher()


@pytest.fixture
def audit_service(audit_repo: MockAuditRepository) -> AuditService:
    return AuditService(repo=audit_repo)


@pytest.fixture
def workflow_service(
    workflow_repo: MockWorkflowRepository,
    template_repo: MockTemplateRepository,
    audit_service: AuditService,
    publisher: MockEventPublisher,
) -> WorkflowService:
    return WorkflowService(
        repo=workflow_repo,
        template_repo=template_repo,
        audit=audit_service,
        publisher=publisher,
    )


@pytest.fixture
def template_service(
    template_repo: MockTemplateRepository,
    workflow_service: WorkflowService,
    audit_service: AuditService,
) -> TemplateService:
    return TemplateService(repo=template_repo, workflow_service=workflow_service, audit=audit_service)


@pytest.fixture
def role_service(
    entity_repo: MockEntityRepository,
    template_repo: MockTemplateRepository,
    audit_service: AuditService,
) -> RoleService:
    return RoleService(repo=entity_repo, template_repo=template_repo, audit=audit_service)


@pytest.fixture
def step_up_service(step_up_store: MockStepUpStore) -> StepUpService:
    return StepUpService(store=step_up_store)


@pytest.fixture
def vote_service(
    vote_repo: MockVoteRepository,
    workflow_repo: MockWorkflowRepository,
    membership_repo: MockGroupMembershipRepository,
    workflow_service: WorkflowService,
    step_up_service: StepUpService,
    queue: MockRecalculationQueue,
    audit_service: AuditService,
    publisher: MockEventPublisher,
) -> VoteService:
    return VoteService(
        repo=vote_repo,
        workflow_repo=workflow_repo,
        membership=membership_repo,
        workflow_service=workflow_service,
        step_up=step_up_service,
        queue=queue,
        audit=audit_service,
        publisher=publisher,
    )


@pytest.fixture
def recalculation_service(
    workflow_repo: MockWorkflowRepository,
    vote_repo: MockVoteRepository,
    membership_repo: MockGroupMembershipRepository,
    workflow_service: WorkflowService,
) -> RecalculationService:
    return RecalculationService(
        workflow_repo=workflow_repo,
        vote_repo=vote_repo,
        membership=membership_repo,
        workflow_service=workflow_service,
    )


@pytest.fixture
def identities() -> dict[str, Identity]:
    """Bearer token -> identity used by the test app."""
    return {}


@pytest.fixture
def app(
    audit_service: AuditService,
    workflow_service: WorkflowService,
    template_service: TemplateService,
    role_service: RoleService,
    vote_service: VoteService,
    identities: dict[str, Identity],
) -> FastAPI:
    """Create a test FastAPI app with mocked dependencies."""
    from approval_engine.api.auth import ANONYMOUS, get_identity
    from approval_engine.api.deps import (
        get_audit_service,
        get_role_service,
        get_template_service,
        get_vote_service,
        get_workflow_service,
    )
    from approval_engine.main import app as main_app

    # Mock session factory to avoid starlette state error
    main_app.state.session_factory = MagicMock()

    main_app.dependency_overrides[get_audit_service] = lambda: audit_service
    main_app.dependency_overrides[get_workflow_service] = lambda: workflow_service
    main_app.dependency_overrides[get_template_service] = lambda: template_service
    main_app.dependency_overrides[get_role_service] = lambda: role_service
    main_app.dependency_overrides[get_vote_service] = lambda: vote_service

    async def _get_mock_identity(request: Request) -> Identity:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        return identities.get(token, ANONYMOUS)

    main_app.dependency_overrides[get_identity] = _get_mock_identity

    return main_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create a test client for the FastAPI app."""
    from httpx import ASGITransport

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def space_role(name: str, space_id: str = SPACE_ID) -> Role:
    """Bind a catalog role to a space."""
    return bind_role(RoleRequest(name=name, scope=SpaceScope(space_id=space_id)))


def group_rule(group_id: str, min_count: int = 1, *, high_privilege: bool = False) -> dict[str, Any]:
    return {
        "type": "GROUP_REQUIREMENT",
        "group_id": group_id,
        "min_count": min_count,
        "require_high_privilege": high_privilege,
    }


def voter(subject_id: str, **kwargs: Any) -> Identity:
    """Identity allowed to vote on every template in the test space."""
    return Identity(subject_id=subject_id, roles=(space_role("SpaceWideWorkflowTemplateVoter"),), **kwargs)


@pytest.fixture
async def template(template_service: TemplateService, admin: Identity) -> WorkflowTemplate:
    """ACTIVE template requiring two approvals from GROUP_1."""
    return await template_service.create_template(
        name="Payments",
        space_id=SPACE_ID,
        approval_rule=group_rule(GROUP_1, 2),
        identity=admin,
    )


@pytest.fixture
async def workflow(workflow_service: WorkflowService, template: WorkflowTemplate, admin: Identity) -> Workflow:
    return await workflow_service.create_workflow(
        template_id=template.id,
        name="Pay invoice 42",
        description="Quarterly vendor payment",
        identity=admin,
    )
