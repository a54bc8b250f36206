"""Tests for RoleService."""

from __future__ import annotations

import pytest
from approval_core.enums import AuditEventType, EntityType
from approval_core.errors import AuthorizationError, ErrorCode, NotFoundError, ValidationError
from approval_core.models import Entity, GroupScope, Identity, RoleRequest, SpaceScope, WorkflowTemplateScope
from approval_engine.domain.role_service import RoleService
from approval_engine.domain.template_service import TemplateService
from conftest import GROUP_1, SPACE_ID, MockAuditRepository, MockEntityRepository, group_rule, space_role


@pytest.fixture
def agent(entity_repo: MockEntityRepository) -> Entity:
    return entity_repo.add(Entity(id="agent-7", entity_type=EntityType.AGENT))


def _voter_request(space_id: str = SPACE_ID) -> RoleRequest:
    return RoleRequest(name="SpaceWideWorkflowTemplateVoter", scope=SpaceScope(space_id=space_id))


class TestRoleService:
    async def test_admin_assigns_roles(
        self,
        role_service: RoleService,
        agent: Entity,
        admin: Identity,
        audit_repo: MockAuditRepository,
    ) -> None:
        entity = await role_service.assign_roles(
            entity_type=EntityType.AGENT,
            entity_id=agent.id,
            roles=[_voter_request()],
            requestor=admin,
        )

        assert [role.name for role in entity.roles] == ["SpaceWideWorkflowTemplateVoter"]
        assert entity.occ == 1
        assert audit_repo._events[-1].event_type == AuditEventType.ROLES_ASSIGNED

    async def test_duplicate_assignment_is_noop(
        self, role_service: RoleService, agent: Entity, admin: Identity
    ) -> None:
        kwargs = {"entity_type": EntityType.AGENT, "entity_id": agent.id, "requestor": admin}
        await role_service.assign_roles(roles=[_voter_request()], **kwargs)
        entity = await role_service.assign_roles(roles=[_voter_request(), _voter_request()], **kwargs)

        assert len(entity.roles) == 1
        assert entity.occ == 1

    async def test_space_manager_limited_to_space(self, role_service: RoleService, agent: Entity) -> None:
        manager = Identity(subject_id="manager", roles=(space_role("SpaceManager"),))

        entity = await role_service.assign_roles(
            entity_type=EntityType.AGENT, entity_id=agent.id, roles=[_voter_request()], requestor=manager
        )
        assert len(entity.roles) == 1

        with pytest.raises(AuthorizationError) as exc_info:
            await role_service.assign_roles(
                entity_type=EntityType.AGENT,
                entity_id=agent.id,
                roles=[_voter_request("space-other")],
                requestor=manager,
            )
        assert exc_info.value.code == ErrorCode.PERMISSION_DENIED

    async def test_template_role_via_parent_space(
        self,
        role_service: RoleService,
        template_service: TemplateService,
        agent: Entity,
        admin: Identity,
    ) -> None:
        template = await template_service.create_template(
            name="Payments", space_id=SPACE_ID, approval_rule=group_rule(GROUP_1), identity=admin
        )
        manager = Identity(subject_id="manager", roles=(space_role("SpaceManager"),))
        request = RoleRequest(
            name="WorkflowTemplateVoter",
            scope=WorkflowTemplateScope(workflow_template_id=str(template.id)),
        )

        entity = await role_service.assign_roles(
            entity_type=EntityType.AGENT, entity_id=agent.id, roles=[request], requestor=manager
        )
        assert entity.roles[0].name == "WorkflowTemplateVoter"

    async def test_invalid_binding_rejected_before_authorization(
        self, role_service: RoleService, agent: Entity
    ) -> None:
        nobody = Identity(subject_id="nobody")
        with pytest.raises(ValidationError) as exc_info:
            await role_service.assign_roles(
                entity_type=EntityType.AGENT,
                entity_id=agent.id,
                roles=[RoleRequest(name="GroupManager", scope=SpaceScope(space_id=SPACE_ID))],
                requestor=nobody,
            )
        assert exc_info.value.code == ErrorCode.ROLE_SCOPE_INVALID

    async def test_limit_enforced(self, role_service: RoleService, agent: Entity, admin: Identity) -> None:
        requests = [RoleRequest(name="GroupReadOnly", scope=GroupScope(group_id=f"g-{i}")) for i in range(129)]
        with pytest.raises(ValidationError) as exc_info:
            await role_service.assign_roles(
                entity_type=EntityType.AGENT, entity_id=agent.id, roles=requests, requestor=admin
            )
        assert exc_info.value.code == ErrorCode.MAX_ROLES_PER_ENTITY_EXCEEDED

    async def test_remove_is_idempotent(self, role_service: RoleService, agent: Entity, admin: Identity) -> None:
        kwargs = {"entity_type": EntityType.AGENT, "entity_id": agent.id, "requestor": admin}
        await role_service.assign_roles(roles=[_voter_request()], **kwargs)

        first = await role_service.remove_roles(roles=[_voter_request()], **kwargs)
        second = await role_service.remove_roles(roles=[_voter_request()], **kwargs)

        assert first.roles == []
        assert second.occ == first.occ

    async def test_unknown_entity(self, role_service: RoleService, admin: Identity) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await role_service.assign_roles(
                entity_type=EntityType.USER, entity_id="ghost", roles=[_voter_request()], requestor=admin
            )
        assert exc_info.value.code == ErrorCode.ENTITY_NOT_FOUND

    def test_lists_catalog(self, role_service: RoleService) -> None:
        names = {template.name for template in role_service.list_role_templates()}
        assert {"SpaceManager", "OrgWideWorkflowFullAccess", "GroupReadOnly"} <= names
