"""FastAPI dependency injection."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from approval_core.settings import StepUpSettings
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from approval_engine.domain.audit_service import AuditService
from approval_engine.domain.role_service import RoleService
from approval_engine.domain.step_up_service import StepUpService
from approval_engine.domain.template_service import TemplateService
from approval_engine.domain.vote_service import VoteService
from approval_engine.domain.workflow_service import WorkflowService
from approval_engine.repository.postgres import (
    PgAuditRepository,
    PgEntityRepository,
    PgGroupMembershipRepository,
    PgTemplateRepository,
    PgVoteRepository,
    PgWorkflowRepository,
)
from approval_engine.repository.redis_step_up import RedisStepUpStore


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    session_factory = request.app.state.session_factory
    async with session_factory() as session, session.begin():
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_session)]


def get_audit_service(session: SessionDep) -> AuditService:
    return AuditService(repo=PgAuditRepository(session))


def get_workflow_service(
    request: Request,
    session: SessionDep,
    audit: Annotated[AuditService, Depends(get_audit_service)],
) -> WorkflowService:
    return WorkflowService(
        repo=PgWorkflowRepository(session),
        template_repo=PgTemplateRepository(session),
        audit=audit,
        publisher=request.app.state.nats_publisher,
    )


def get_template_service(
    session: SessionDep,
    audit: Annotated[AuditService, Depends(get_audit_service)],
    workflow_service: Annotated[WorkflowService, Depends(get_workflow_service)],
) -> TemplateService:
    return TemplateService(repo=PgTemplateRepository(session), workflow_service=workflow_service, audit=audit)


def get_role_service(
    session: SessionDep,
    audit: Annotated[AuditService, Depends(get_audit_service)],
) -> RoleService:
    return RoleService(repo=PgEntityRepository(session), template_repo=PgTemplateRepository(session), audit=audit)


def get_step_up_service(request: Request) -> StepUpService:
    settings = StepUpSettings()
    return StepUpService(store=RedisStepUpStore(request.app.state.redis, settings), settings=settings)


def get_vote_service(
    request: Request,
    session: SessionDep,
    audit: Annotated[AuditService, Depends(get_audit_service)],
    workflow_service: Annotated[WorkflowService, Depends(get_workflow_service)],
    step_up: Annotated[StepUpService, Depends(get_step_up_service)],
) -> VoteService:
    return VoteService(
        repo=PgVoteRepository(session),
        workflow_repo=PgWorkflowRepository(session),
        membership=PgGroupMembershipRepository(session),
        workflow_service=workflow_service,
        step_up=step_up,
        queue=request.app.state.recalculation_queue,
        audit=audit,
        publisher=request.app.state.nats_publisher,
    )


AuditServiceDep = Annotated[AuditService, Depends(get_audit_service)]
WorkflowServiceDep = Annotated[WorkflowService, Depends(get_workflow_service)]
TemplateServiceDep = Annotated[TemplateService, Depends(get_template_service)]
RoleServiceDep = Annotated[RoleService, Depends(get_role_service)]
VoteServiceDep = Annotated[VoteService, Depends(get_vote_service)]
