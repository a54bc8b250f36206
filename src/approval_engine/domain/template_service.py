"""Workflow template lifecycle: versioning and deprecation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from approval_core.enums import AuditEventType, Permission, WorkflowTemplateStatus
from approval_core.errors import AuthorizationError, ConflictError, ErrorCode, ValidationError
from approval_core.models import SpaceScope, WorkflowTemplate
from approval_core.permissions import identity_has_permission
from approval_core.rules import validate_rule

from approval_engine.domain.workflow_service import SYSTEM_ACTOR, template_scope

if TYPE_CHECKING:
    import uuid

    from approval_core.models import Identity

    from approval_engine.domain.audit_service import AuditService
    from approval_engine.domain.workflow_service import WorkflowService
    from approval_engine.repository.protocols import TemplateRepository

logger = logging.getLogger(__name__)


def _check_expiry(hours: int | None) -> None:
    if hours is not None and (isinstance(hours, bool) or hours < 1):
        raise ValidationError(
            ErrorCode.WORKFLOW_TEMPLATE_EXPIRES_IN_HOURS_INVALID,
            f"default_expires_in_hours must be a positive number of hours, got {hours!r}",
        )


class TemplateService:
    """Manages workflow templates.

    Updating a template creates a new ACTIVE version and moves the previous
    one to PENDING_DEPRECATION; it becomes DEPRECATED once none of its
    workflows are open any more.
    """

    def __init__(
        self,
        repo: TemplateRepository,
        workflow_service: WorkflowService,
        audit: AuditService,
    ) -> None:
        self._repo = repo
        self._workflow_service = workflow_service
        self._audit = audit

    async def create_template(
        self,
        *,
        name: str,
        space_id: str,
        approval_rule: Any,
        identity: Identity,
        description: str = "",
        default_expires_in_hours: int | None = None,
    ) -> WorkflowTemplate:
        if not identity_has_permission(identity, Permission.MANAGE, SpaceScope(space_id=space_id)):
            raise AuthorizationError(
                ErrorCode.PERMISSION_DENIED,
                f"{identity.subject_id} may not create templates in space {space_id}",
            )
        rule = validate_rule(approval_rule)
        _check_expiry(default_expires_in_hours)

        template = WorkflowTemplate(
            name=name,
            description=description,
            space_id=space_id,
            approval_rule=rule,
            default_expires_in_hours=default_expires_in_hours,
            created_by=identity.subject_id,
        )
        saved = await self._repo.create(template)

        await self._audit.record_event(
            event_type=AuditEventType.TEMPLATE_CREATED,
            entity_type="workflow_template",
            entity_id=str(saved.id),
            actor_id=identity.subject_id,
            description=f"Template created: {name}",
            details={"space_id": space_id, "version": saved.version},
        )
        return saved

    async def update_template(
        self,
        template_id: uuid.UUID,
        *,
        identity: Identity,
        description: str | None = None,
        approval_rule: Any = None,
        default_expires_in_hours: int | None = None,
    ) -> WorkflowTemplate:
        """Publish a new version. Open workflows keep the rule they were created with."""
        current = await self._workflow_service.get_template(template_id)
        self._ensure_can_write(current, identity)
        if current.status != WorkflowTemplateStatus.ACTIVE:
            raise ConflictError(ErrorCode.WORKFLOW_TEMPLATE_NOT_ACTIVE, f"Template {template_id} is {current.status}")

        rule = validate_rule(approval_rule) if approval_rule is not None else current.approval_rule
        _check_expiry(default_expires_in_hours)

        await self._retire(current, allow_voting_on_deprecated_template=True)
        new_version = WorkflowTemplate(
            name=current.name,
            description=current.description if description is None else description,
            version=current.version + 1,
            space_id=current.space_id,
            approval_rule=rule,
            default_expires_in_hours=default_expires_in_hours or current.default_expires_in_hours,
            created_by=identity.subject_id,
        )
        saved = await self._repo.create(new_version)

        await self._audit.record_event(
            event_type=AuditEventType.TEMPLATE_UPDATED,
            entity_type="workflow_template",
            entity_id=str(saved.id),
            actor_id=identity.subject_id,
            description=f"Template {current.name} updated to version {saved.version}",
            details={"previous_id": str(current.id), "version": saved.version},
        )
        return saved

    async def deprecate_template(
        self,
        template_id: uuid.UUID,
        *,
        identity: Identity,
        cancel_workflows: bool = False,
    ) -> WorkflowTemplate:
        """Retire a template. Its open workflows either keep collecting votes or are cancelled."""
        current = await self._workflow_service.get_template(template_id)
        self._ensure_can_write(current, identity)
        if current.status != WorkflowTemplateStatus.ACTIVE:
            raise ConflictError(ErrorCode.WORKFLOW_TEMPLATE_NOT_ACTIVE, f"Template {template_id} is {current.status}")

        updated = await self._retire(current, allow_voting_on_deprecated_template=not cancel_workflows)
        cancelled = 0
        if cancel_workflows:
            cancelled = await self._workflow_service.cancel_for_template(current.id, actor_id=identity.subject_id)

        await self._audit.record_event(
            event_type=AuditEventType.TEMPLATE_DEPRECATED,
            entity_type="workflow_template",
            entity_id=str(current.id),
            actor_id=identity.subject_id,
            description=f"Template {current.name} v{current.version} marked for deprecation",
            details={"cancel_workflows": cancel_workflows, "cancelled": cancelled},
        )
        return updated

    async def complete_deprecation(self, template_id: uuid.UUID) -> WorkflowTemplate | None:
        """Mark a PENDING_DEPRECATION template DEPRECATED once it has no open workflows.

        Returns None while workflows are still open.
        """
        template = await self._workflow_service.get_template(template_id)
        if template.status != WorkflowTemplateStatus.PENDING_DEPRECATION:
            raise ConflictError(
                ErrorCode.WORKFLOW_TEMPLATE_NOT_PENDING_DEPRECATION,
                f"Template {template_id} is {template.status}",
            )
        if await self._workflow_service.has_open_workflows(template_id):
            return None

        deprecated = await self._repo.transition_status(
            template_id,
            WorkflowTemplateStatus.PENDING_DEPRECATION,
            WorkflowTemplateStatus.DEPRECATED,
        )
        if deprecated is None:
            raise ConflictError(
                ErrorCode.WORKFLOW_TEMPLATE_NOT_PENDING_DEPRECATION,
                f"Template {template_id} was deprecated concurrently",
            )
        await self._audit.record_event(
            event_type=AuditEventType.TEMPLATE_DEPRECATED,
            entity_type="workflow_template",
            entity_id=str(template_id),
            actor_id=SYSTEM_ACTOR,
            description=f"Template {template.name} v{template.version} deprecated",
        )
        return deprecated

    async def complete_deprecations(self) -> int:
        completed = 0
        for template in await self._repo.list_templates(status=WorkflowTemplateStatus.PENDING_DEPRECATION, limit=500):
            try:
                if await self.complete_deprecation(template.id) is not None:
                    completed += 1
            except ConflictError:
                logger.debug("Template %s deprecated by another worker", template.id)
        if completed:
            logger.info("Completed deprecation of %d template(s)", completed)
        return completed

    async def get_template(self, template_id: uuid.UUID) -> WorkflowTemplate:
        return await self._workflow_service.get_template(template_id)

    async def list_templates(
        self,
        *,
        space_id: str | None = None,
        status: WorkflowTemplateStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowTemplate]:
        return await self._repo.list_templates(space_id=space_id, status=status, limit=limit, offset=offset)

    async def _retire(
        self,
        current: WorkflowTemplate,
        *,
        allow_voting_on_deprecated_template: bool,
    ) -> WorkflowTemplate:
        """Move an ACTIVE template to PENDING_DEPRECATION, unless another writer got there first."""
        retired = await self._repo.transition_status(
            current.id,
            WorkflowTemplateStatus.ACTIVE,
            WorkflowTemplateStatus.PENDING_DEPRECATION,
            allow_voting_on_deprecated_template=allow_voting_on_deprecated_template,
        )
        if retired is None:
            raise ConflictError(
                ErrorCode.WORKFLOW_TEMPLATE_NOT_ACTIVE,
                f"Template {current.id} is no longer active",
            )
        return retired

    def _ensure_can_write(self, template: WorkflowTemplate, identity: Identity) -> None:
        scope = template_scope(template)
        if identity_has_permission(
            identity, Permission.WRITE, scope, parent_space_id=template.space_id
        ) or identity_has_permission(identity, Permission.MANAGE, scope, parent_space_id=template.space_id):
            return
        raise AuthorizationError(
            ErrorCode.PERMISSION_DENIED,
            f"{identity.subject_id} may not modify template {template.id}",
        )
