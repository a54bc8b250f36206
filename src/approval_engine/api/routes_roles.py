"""Role endpoints: /api/v1/{users|agents}/{id}/roles and the role catalog."""

from __future__ import annotations

from fastapi import APIRouter

from approval_engine.api.auth import IdentityDep
from approval_engine.api.deps import RoleServiceDep
from approval_engine.api.schemas import EntityKind, EntityRolesResponse, RolesRequest, RoleTemplateResponse

router = APIRouter(prefix="/api/v1", tags=["roles"])


@router.get("/roles/templates")
async def list_role_templates(service: RoleServiceDep, identity: IdentityDep) -> list[RoleTemplateResponse]:
    return [RoleTemplateResponse.model_validate(t, from_attributes=True) for t in service.list_role_templates()]


@router.get("/{entity_kind}/{entity_id}/roles", responses={404: {"description": "Entity not found"}})
async def get_roles(
    entity_kind: EntityKind,
    entity_id: str,
    service: RoleServiceDep,
    identity: IdentityDep,
) -> EntityRolesResponse:
    entity = await service.get_entity(entity_kind.entity_type, entity_id)
    return EntityRolesResponse.model_validate(entity, from_attributes=True)


@router.put(
    "/{entity_kind}/{entity_id}/roles",
    responses={403: {"description": "Not allowed to assign these roles"}, 404: {"description": "Entity not found"}},
)
async def assign_roles(
    entity_kind: EntityKind,
    entity_id: str,
    body: RolesRequest,
    service: RoleServiceDep,
    identity: IdentityDep,
) -> EntityRolesResponse:
    entity = await service.assign_roles(
        entity_type=entity_kind.entity_type,
        entity_id=entity_id,
        roles=body.roles,
        requestor=identity,
    )
    return EntityRolesResponse.model_validate(entity, from_attributes=True)


@router.delete(
    "/{entity_kind}/{entity_id}/roles",
    responses={403: {"description": "Not allowed to remove these roles"}, 404: {"description": "Entity not found"}},
)
async def remove_roles(
    entity_kind: EntityKind,
    entity_id: str,
    body: RolesRequest,
    service: RoleServiceDep,
    identity: IdentityDep,
) -> EntityRolesResponse:
    entity = await service.remove_roles(
        entity_type=entity_kind.entity_type,
        entity_id=entity_id,
        roles=body.roles,
        requestor=identity,
    )
    return EntityRolesResponse.model_validate(entity, from_attributes=True)
