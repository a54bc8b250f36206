"""Workflow template endpoints: /api/v1/workflow-templates."""

from __future__ import annotations

import uuid

from approval_core.enums import WorkflowTemplateStatus
from fastapi import APIRouter, Query

from approval_engine.api.auth import IdentityDep
from approval_engine.api.deps import TemplateServiceDep
from approval_engine.api.schemas import (
    CreateTemplateRequest,
    DeprecateTemplateRequest,
    TemplateResponse,
    UpdateTemplateRequest,
)

router = APIRouter(prefix="/api/v1/workflow-templates", tags=["workflow-templates"])


@router.post("", status_code=201, responses={422: {"description": "Invalid approval rule"}})
async def create_template(
    body: CreateTemplateRequest,
    service: TemplateServiceDep,
    identity: IdentityDep,
) -> TemplateResponse:
    template = await service.create_template(
        name=body.name,
        description=body.description,
        space_id=body.space_id,
        approval_rule=body.approval_rule,
        default_expires_in_hours=body.default_expires_in_hours,
        identity=identity,
    )
    return TemplateResponse.model_validate(template, from_attributes=True)


@router.get("")
async def list_templates(
    service: TemplateServiceDep,
    identity: IdentityDep,
    space_id: str | None = None,
    status: WorkflowTemplateStatus | None = None,
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[TemplateResponse]:
    templates = await service.list_templates(space_id=space_id, status=status, limit=limit, offset=offset)
    return [TemplateResponse.model_validate(t, from_attributes=True) for t in templates]


@router.get("/{template_id}", responses={404: {"description": "Template not found"}})
async def get_template(template_id: uuid.UUID, service: TemplateServiceDep, identity: IdentityDep) -> TemplateResponse:
    template = await service.get_template(template_id)
    return TemplateResponse.model_validate(template, from_attributes=True)


@router.put("/{template_id}", status_code=201, responses={409: {"description": "Template not active"}})
async def update_template(
    template_id: uuid.UUID,
    body: UpdateTemplateRequest,
    service: TemplateServiceDep,
    identity: IdentityDep,
) -> TemplateResponse:
    template = await service.update_template(
        template_id,
        identity=identity,
        description=body.description,
        approval_rule=body.approval_rule,
        default_expires_in_hours=body.default_expires_in_hours,
    )
    return TemplateResponse.model_validate(template, from_attributes=True)


@router.post("/{template_id}/deprecate", responses={409: {"description": "Template not active"}})
async def deprecate_template(
    template_id: uuid.UUID,
    body: DeprecateTemplateRequest,
    service: TemplateServiceDep,
    identity: IdentityDep,
) -> TemplateResponse:
    template = await service.deprecate_template(
        template_id,
        identity=identity,
        cancel_workflows=body.cancel_workflows,
    )
    return TemplateResponse.model_validate(template, from_attributes=True)
