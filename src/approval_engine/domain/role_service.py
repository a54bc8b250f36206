"""Role assignment for users and agents."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from approval_core.enums import AuditEventType
from approval_core.errors import AuthorizationError, ConflictError, ErrorCode, NotFoundError
from approval_core.models import WorkflowTemplateScope
from approval_core.permissions import can_assign_roles
from approval_core.roles import assign_roles, bind_role, list_role_templates, remove_roles

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from approval_core.enums import EntityType
    from approval_core.models import Entity, Identity, Role, RoleRequest, RoleTemplate

    from approval_engine.domain.audit_service import AuditService
    from approval_engine.repository.protocols import EntityRepository, TemplateRepository

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5


class RoleService:
    """Grants and revokes catalog roles, bounded by the requestor's own authority."""

    def __init__(
        self,
        repo: EntityRepository,
        template_repo: TemplateRepository,
        audit: AuditService,
    ) -> None:
        self._repo = repo
        self._template_repo = template_repo
        self._audit = audit

    async def assign_roles(
        self,
        *,
        entity_type: EntityType,
        entity_id: str,
        roles: Sequence[RoleRequest],
        requestor: Identity,
    ) -> Entity:
        """Add roles to an entity (PUT semantics: additive, duplicates are no-ops)."""
        bound = await self._authorize(roles, requestor)
        entity = await self._update(entity_type, entity_id, lambda current: assign_roles(current, bound))

        await self._audit.record_event(
            event_type=AuditEventType.ROLES_ASSIGNED,
            entity_type=str(entity_type),
            entity_id=entity_id,
            actor_id=requestor.subject_id,
            description=f"{len(bound)} role(s) assigned to {entity_type} {entity_id}",
            details={"roles": sorted(role.name for role in bound)},
        )
        return entity

    async def remove_roles(
        self,
        *,
        entity_type: EntityType,
        entity_id: str,
        roles: Sequence[RoleRequest],
        requestor: Identity,
    ) -> Entity:
        """Remove roles from an entity. Roles it does not hold are ignored."""
        bound = await self._authorize(roles, requestor)
        entity = await self._update(entity_type, entity_id, lambda current: remove_roles(current, bound))

        await self._audit.record_event(
            event_type=AuditEventType.ROLES_REMOVED,
            entity_type=str(entity_type),
            entity_id=entity_id,
            actor_id=requestor.subject_id,
            description=f"{len(bound)} role(s) removed from {entity_type} {entity_id}",
            details={"roles": sorted(role.name for role in bound)},
        )
        return entity

    async def get_entity(self, entity_type: EntityType, entity_id: str) -> Entity:
        entity = await self._repo.get(entity_type, entity_id)
        if entity is None:
            raise NotFoundError(ErrorCode.ENTITY_NOT_FOUND, f"{entity_type} {entity_id} not found")
        return entity

    def list_role_templates(self) -> list[RoleTemplate]:
        return list_role_templates()

    async def _authorize(self, requests: Sequence[RoleRequest], requestor: Identity) -> list[Role]:
        bound = [bind_role(request) for request in requests]
        template_spaces = await self._template_spaces(requests)
        if not can_assign_roles(requestor, requests, template_spaces):
            raise AuthorizationError(
                ErrorCode.PERMISSION_DENIED,
                f"{requestor.subject_id} may not assign or remove the requested roles",
            )
        return bound

    async def _template_spaces(self, requests: Sequence[RoleRequest]) -> dict[str, str | None]:
        spaces: dict[str, str | None] = {}
        for request in requests:
            if not isinstance(request.scope, WorkflowTemplateScope):
                continue
            template_id = request.scope.workflow_template_id
            if template_id in spaces:
                continue
            try:
                template = await self._template_repo.get_by_id(uuid.UUID(template_id))
            except ValueError:
                template = None
            spaces[template_id] = template.space_id if template else None
        return spaces

    async def _update(
        self,
        entity_type: EntityType,
        entity_id: str,
        change: Callable[[list[Role]], list[Role]],
    ) -> Entity:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            entity = await self.get_entity(entity_type, entity_id)
            new_roles = change(entity.roles)
            if [role.key for role in new_roles] == [role.key for role in entity.roles]:
                return entity
            updated = await self._repo.compare_and_swap_roles(entity_type, entity_id, entity.occ, new_roles)
            if updated is not None:
                return updated
            logger.debug("Role update for %s %s lost version race, retrying", entity_type, entity_id)
        raise ConflictError(
            ErrorCode.CONCURRENT_MODIFICATION,
            f"Roles of {entity_type} {entity_id} kept changing, giving up after {MAX_UPDATE_ATTEMPTS} attempts",
        )
