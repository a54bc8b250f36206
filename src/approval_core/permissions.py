"""Role-scoped permission resolution.

Org-scoped roles apply to every instance of their resource type, including
instances created after the role was assigned. Space-scoped roles also reach
the workflow templates that declare that space as their parent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from approval_core.enums import Permission, ResourceType, ScopeType
from approval_core.models import OrgScope, SpaceScope, WorkflowTemplateScope

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from approval_core.models import Identity, Role, RoleRequest, Scope

_RESOURCE_TYPE_BY_SCOPE: dict[ScopeType, ResourceType] = {
    ScopeType.SPACE: ResourceType.SPACE,
    ScopeType.GROUP: ResourceType.GROUP,
    ScopeType.WORKFLOW_TEMPLATE: ResourceType.WORKFLOW_TEMPLATE,
}


def has_permission(
    roles: Iterable[Role],
    permission: Permission,
    target_scope: Scope,
    *,
    resource_type: ResourceType | None = None,
    parent_space_id: str | None = None,
) -> bool:
    """Decide whether any of ``roles`` grants ``permission`` on ``target_scope``.

    Args:
        roles: Roles held by the identity.
        permission: Permission required by the operation.
        target_scope: Resource the operation acts on.
        resource_type: Resource type for org-level targets (e.g. "create a space").
            Derived from ``target_scope`` otherwise.
        parent_space_id: Space that contains a workflow template target.
    """
    target_type = _RESOURCE_TYPE_BY_SCOPE.get(ScopeType(target_scope.type), resource_type)
    return any(
        permission in role.permissions
        and _scope_matches(role, permission, target_scope, target_type, parent_space_id)
        for role in roles
    )


def _scope_matches(
    role: Role,
    permission: Permission,
    target_scope: Scope,
    target_type: ResourceType | None,
    parent_space_id: str | None,
) -> bool:
    match role.scope:
        case OrgScope():
            return target_type is None or role.resource_type == target_type
        case SpaceScope(space_id=space_id) if isinstance(target_scope, WorkflowTemplateScope):
            if parent_space_id != space_id:
                return False
            if role.resource_type == ResourceType.WORKFLOW_TEMPLATE:
                return True
            return role.resource_type == ResourceType.SPACE and permission == Permission.MANAGE
        case _:
            return role.scope == target_scope


def identity_has_permission(
    identity: Identity,
    permission: Permission,
    target_scope: Scope,
    *,
    resource_type: ResourceType | None = None,
    parent_space_id: str | None = None,
) -> bool:
    """``has_permission`` for an identity; organization admins hold every permission."""
    if identity.is_org_admin:
        return True
    return has_permission(
        identity.roles,
        permission,
        target_scope,
        resource_type=resource_type,
        parent_space_id=parent_space_id,
    )


def can_assign_roles(
    requestor: Identity,
    requests: Iterable[RoleRequest],
    template_spaces: Mapping[str, str | None] | None = None,
) -> bool:
    """Check the requestor may grant (or revoke) every requested role.

    ``template_spaces`` maps workflow template ids to their parent space id;
    template-scoped roles are delegated through ``manage`` on that space.
    """
    if requestor.is_org_admin:
        return True

    template_spaces = template_spaces or {}
    for request in requests:
        scope = request.scope
        match scope:
            case OrgScope():
                return False
            case WorkflowTemplateScope(workflow_template_id=template_id):
                allowed = has_permission(
                    requestor.roles,
                    Permission.MANAGE,
                    scope,
                    parent_space_id=template_spaces.get(template_id),
                )
            case _:
                allowed = has_permission(requestor.roles, Permission.MANAGE, scope)
        if not allowed:
            return False
    return True
