"""Workflow and vote endpoints: /api/v1/workflows."""

from __future__ import annotations

import uuid

from approval_core.enums import WorkflowStatus
from fastapi import APIRouter, Query

from approval_engine.api.auth import IdentityDep
from approval_engine.api.deps import VoteServiceDep, WorkflowServiceDep
from approval_engine.api.schemas import (
    CanVoteResponse,
    CastVoteRequest,
    CreateWorkflowRequest,
    VoteResponse,
    WorkflowResponse,
)

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])


@router.post("", status_code=201, responses={403: {"description": "Not allowed to instantiate template"}})
async def create_workflow(
    body: CreateWorkflowRequest,
    service: WorkflowServiceDep,
    identity: IdentityDep,
) -> WorkflowResponse:
    workflow = await service.create_workflow(
        template_id=body.template_id,
        name=body.name,
        description=body.description,
        identity=identity,
        expires_in_hours=body.expires_in_hours,
    )
    return WorkflowResponse.model_validate(workflow, from_attributes=True)


@router.get("")
async def list_workflows(
    service: WorkflowServiceDep,
    identity: IdentityDep,
    template_id: uuid.UUID | None = None,
    status: WorkflowStatus | None = None,
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[WorkflowResponse]:
    workflows = await service.list_workflows(
        identity=identity,
        template_id=template_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return [WorkflowResponse.model_validate(w, from_attributes=True) for w in workflows]


@router.get("/{workflow_id}", responses={404: {"description": "Workflow not found"}})
async def get_workflow(workflow_id: uuid.UUID, service: WorkflowServiceDep, identity: IdentityDep) -> WorkflowResponse:
    workflow = await service.get_workflow(workflow_id, identity=identity)
    return WorkflowResponse.model_validate(workflow, from_attributes=True)


@router.post("/{workflow_id}/cancel", responses={409: {"description": "Workflow already closed"}})
async def cancel_workflow(
    workflow_id: uuid.UUID,
    service: WorkflowServiceDep,
    identity: IdentityDep,
) -> WorkflowResponse:
    workflow = await service.cancel_workflow(workflow_id, identity=identity)
    return WorkflowResponse.model_validate(workflow, from_attributes=True)


# ─── Votes ───────────────────────────────────────────────


@router.get("/{workflow_id}/can-vote")
async def can_vote(workflow_id: uuid.UUID, service: VoteServiceDep, identity: IdentityDep) -> CanVoteResponse:
    result = await service.can_vote(workflow_id, identity)
    return CanVoteResponse.model_validate(result, from_attributes=True)


@router.post(
    "/{workflow_id}/votes",
    status_code=202,
    responses={
        403: {"description": "Not eligible, not in group, or step-up required"},
        409: {"description": "Workflow closed or step-up context already used"},
    },
)
async def cast_vote(
    workflow_id: uuid.UUID,
    body: CastVoteRequest,
    service: VoteServiceDep,
    identity: IdentityDep,
) -> VoteResponse:
    vote = await service.cast_vote(
        workflow_id,
        identity=identity,
        vote_type=body.vote_type,
        voted_for_groups=body.voted_for_groups,
        reason=body.reason,
    )
    return VoteResponse.model_validate(vote, from_attributes=True)


@router.get("/{workflow_id}/votes")
async def list_votes(workflow_id: uuid.UUID, service: VoteServiceDep, identity: IdentityDep) -> list[VoteResponse]:
    votes = await service.list_votes(workflow_id, identity=identity)
    return [VoteResponse.model_validate(v, from_attributes=True) for v in votes]
