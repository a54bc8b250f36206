"""Tests for the role catalog and role-set operations."""

from __future__ import annotations

import pytest
from approval_core.enums import Permission, ResourceType, ScopeType
from approval_core.errors import ErrorCode, ValidationError
from approval_core.models import GroupScope, OrgScope, RoleRequest, SpaceScope
from approval_core.roles import (
    MAX_ROLES_PER_ENTITY,
    SYSTEM_ROLES,
    assign_roles,
    bind_role,
    consolidate_roles,
    remove_roles,
)


def _group_roles(count: int, offset: int = 0) -> list:
    return [
        bind_role(RoleRequest(name="GroupReadOnly", scope=GroupScope(group_id=f"group-{i}")))
        for i in range(offset, offset + count)
    ]


class TestCatalog:
    def test_scope_prefixes(self) -> None:
        assert SYSTEM_ROLES["SpaceManager"].scope_type == ScopeType.SPACE
        assert SYSTEM_ROLES["OrgWideSpaceManager"].scope_type == ScopeType.ORG
        assert SYSTEM_ROLES["SpaceWideWorkflowTemplateVoter"].scope_type == ScopeType.SPACE
        assert SYSTEM_ROLES["OrgWideWorkflowFullAccess"].resource_type == ResourceType.WORKFLOW_TEMPLATE

    def test_group_roles_have_no_wider_variants(self) -> None:
        assert "OrgWideGroupManager" not in SYSTEM_ROLES
        assert "SpaceWideGroupManager" not in SYSTEM_ROLES

    def test_template_full_access_permissions(self) -> None:
        assert SYSTEM_ROLES["WorkflowTemplateFullAccess"].permissions == {
            Permission.READ,
            Permission.WRITE,
            Permission.INSTANTIATE,
            Permission.VOTE,
        }


class TestBindRole:
    def test_binds_template_permissions(self) -> None:
        role = bind_role(RoleRequest(name="SpaceManager", scope=SpaceScope(space_id="space-1")))
        assert role.resource_type == ResourceType.SPACE
        assert role.permissions == {Permission.READ, Permission.MANAGE}

    def test_unknown_name(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            bind_role(RoleRequest(name="SuperUser", scope=OrgScope()))
        assert exc_info.value.code == ErrorCode.ROLE_NAME_UNKNOWN

    def test_wrong_scope(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            bind_role(RoleRequest(name="SpaceManager", scope=OrgScope()))
        assert exc_info.value.code == ErrorCode.ROLE_SCOPE_INVALID


class TestRoleSets:
    def test_consolidate_drops_duplicates(self) -> None:
        roles = _group_roles(2)
        assert consolidate_roles([*roles, roles[0]]) == roles

    def test_same_name_different_scope_kept(self) -> None:
        roles = _group_roles(2)
        assert len(assign_roles([roles[0]], [roles[1]])) == 2

    def test_request_over_limit_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            assign_roles([], _group_roles(MAX_ROLES_PER_ENTITY + 1))
        assert exc_info.value.code == ErrorCode.MAX_ROLES_PER_ENTITY_EXCEEDED

    def test_duplicate_at_limit_is_noop(self) -> None:
        current = _group_roles(MAX_ROLES_PER_ENTITY)
        assert assign_roles(current, [current[5]]) == current

    def test_new_role_at_limit_rejected(self) -> None:
        current = _group_roles(MAX_ROLES_PER_ENTITY)
        with pytest.raises(ValidationError) as exc_info:
            assign_roles(current, _group_roles(1, offset=MAX_ROLES_PER_ENTITY))
        assert exc_info.value.code == ErrorCode.MAX_ROLES_PER_ENTITY_EXCEEDED

    def test_remove_ignores_absent(self) -> None:
        held, absent = _group_roles(2)
        assert remove_roles([held], [absent]) == [held]
        assert remove_roles([held], [held]) == []
