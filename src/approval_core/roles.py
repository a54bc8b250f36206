"""System role catalog and role-set operations.

Roles are never defined ad hoc: a role request names a catalog template and a
scope, and the template fixes the resource type and permission set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from approval_core.enums import Permission, ResourceType, ScopeType
from approval_core.errors import ErrorCode, ValidationError
from approval_core.models import Role, RoleTemplate

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from approval_core.models import RoleRequest

MAX_ROLES_PER_ENTITY = 128

_SCOPE_PREFIX = {
    ScopeType.ORG: "OrgWide",
    ScopeType.SPACE: "SpaceWide",
}

_P = Permission

# (base name, resource type, permissions, scope types). The first scope type is
# the resource's own scope and keeps the unprefixed name.
_CATALOG: tuple[tuple[str, ResourceType, frozenset[Permission], tuple[ScopeType, ...]], ...] = (
    ("GroupReadOnly", ResourceType.GROUP, frozenset({_P.READ}), (ScopeType.GROUP,)),
    ("GroupWrite", ResourceType.GROUP, frozenset({_P.READ, _P.WRITE}), (ScopeType.GROUP,)),
    ("GroupManager", ResourceType.GROUP, frozenset({_P.READ, _P.WRITE, _P.MANAGE}), (ScopeType.GROUP,)),
    ("SpaceReadOnly", ResourceType.SPACE, frozenset({_P.READ}), (ScopeType.SPACE, ScopeType.ORG)),
    ("SpaceManager", ResourceType.SPACE, frozenset({_P.READ, _P.MANAGE}), (ScopeType.SPACE, ScopeType.ORG)),
    *(
        (
            name,
            ResourceType.WORKFLOW_TEMPLATE,
            permissions,
            (ScopeType.WORKFLOW_TEMPLATE, ScopeType.SPACE, ScopeType.ORG),
        )
        for name, permissions in (
            ("WorkflowTemplateReadOnly", frozenset({_P.READ})),
            ("WorkflowTemplateWrite", frozenset({_P.READ, _P.WRITE})),
            ("WorkflowTemplateInstantiator", frozenset({_P.READ, _P.INSTANTIATE})),
            ("WorkflowTemplateVoter", frozenset({_P.READ, _P.VOTE})),
            ("WorkflowTemplateFullAccess", frozenset({_P.READ, _P.WRITE, _P.INSTANTIATE, _P.VOTE})),
            ("WorkflowReadOnly", frozenset({_P.WORKFLOW_READ})),
            ("WorkflowList", frozenset({_P.WORKFLOW_READ, _P.WORKFLOW_LIST})),
            ("WorkflowCancel", frozenset({_P.WORKFLOW_READ, _P.WORKFLOW_CANCEL})),
            ("WorkflowFullAccess", frozenset({_P.WORKFLOW_READ, _P.WORKFLOW_LIST, _P.WORKFLOW_CANCEL})),
        )
    ),
)


def _role_name(base_name: str, scope_type: ScopeType, own_scope: ScopeType) -> str:
    if scope_type == own_scope:
        return base_name
    return f"{_SCOPE_PREFIX[scope_type]}{base_name}"


def _build_catalog() -> dict[str, RoleTemplate]:
    catalog: dict[str, RoleTemplate] = {}
    for base_name, resource_type, permissions, scope_types in _CATALOG:
        for scope_type in scope_types:
            name = _role_name(base_name, scope_type, scope_types[0])
            catalog[name] = RoleTemplate(
                name=name,
                resource_type=resource_type,
                scope_type=scope_type,
                permissions=permissions,
            )
    return catalog


SYSTEM_ROLES: dict[str, RoleTemplate] = _build_catalog()


def list_role_templates() -> list[RoleTemplate]:
    return list(SYSTEM_ROLES.values())


def bind_role(request: RoleRequest) -> Role:
    """Resolve a role request against the catalog."""
    template = SYSTEM_ROLES.get(request.name)
    if template is None:
        raise ValidationError(ErrorCode.ROLE_NAME_UNKNOWN, f"Unknown role: {request.name}")
    if template.scope_type != request.scope.type:
        raise ValidationError(
            ErrorCode.ROLE_SCOPE_INVALID,
            f"Role {request.name} must be bound to a {template.scope_type} scope, got {request.scope.type}",
        )
    return Role(
        name=template.name,
        resource_type=template.resource_type,
        scope=request.scope,
        permissions=template.permissions,
    )


def consolidate_roles(roles: Iterable[Role]) -> list[Role]:
    """Drop exact duplicates (same name and scope), keeping first-seen order."""
    seen: dict[tuple[object, ...], Role] = {}
    for role in roles:
        seen.setdefault(role.key, role)
    return list(seen.values())


def assign_roles(current: Sequence[Role], new_roles: Sequence[Role]) -> list[Role]:
    """Add roles to an entity's role set.

    Raises:
        ValidationError: MAX_ROLES_PER_ENTITY_EXCEEDED when the request alone, or
            the consolidated result, holds more than MAX_ROLES_PER_ENTITY roles.
    """
    requested = consolidate_roles(new_roles)
    if len(requested) > MAX_ROLES_PER_ENTITY:
        raise ValidationError(
            ErrorCode.MAX_ROLES_PER_ENTITY_EXCEEDED,
            f"Cannot assign {len(requested)} roles, maximum is {MAX_ROLES_PER_ENTITY}",
        )
    merged = consolidate_roles([*current, *requested])
    if len(merged) > MAX_ROLES_PER_ENTITY:
        raise ValidationError(
            ErrorCode.MAX_ROLES_PER_ENTITY_EXCEEDED,
            f"Assignment would exceed limit: {len(merged)} roles, maximum is {MAX_ROLES_PER_ENTITY}",
        )
    return merged


def remove_roles(current: Sequence[Role], to_remove: Iterable[Role]) -> list[Role]:
    """Remove roles matched by name and scope. Absent roles are ignored."""
    keys = {role.key for role in to_remove}
    return [role for role in current if role.key not in keys]
