"""Workflow lifecycle management service."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from approval_core.enums import AuditEventType, Permission, WorkflowStatus, WorkflowTemplateStatus
from approval_core.errors import (
    AuthorizationError,
    ConcurrencyError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from approval_core.models import Workflow, WorkflowTemplateScope
from approval_core.permissions import identity_has_permission
from approval_core.settings import WorkflowSettings
from approval_core.telemetry.metrics import record_transition

from approval_engine.events.messages import WorkflowCreated, WorkflowStatusChanged

if TYPE_CHECKING:
    import uuid

    from approval_core.models import Identity, WorkflowTemplate

    from approval_engine.domain.audit_service import AuditService
    from approval_engine.events.messages import ApprovalEvent
    from approval_engine.repository.protocols import EventPublisher, TemplateRepository, WorkflowRepository

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
MAX_TRANSITION_ATTEMPTS = 5

_FINAL_AUDIT_EVENTS: dict[WorkflowStatus, AuditEventType] = {
    WorkflowStatus.APPROVED: AuditEventType.WORKFLOW_APPROVED,
    WorkflowStatus.REJECTED: AuditEventType.WORKFLOW_REJECTED,
    WorkflowStatus.EXPIRED: AuditEventType.WORKFLOW_EXPIRED,
    WorkflowStatus.CANCELLED: AuditEventType.WORKFLOW_CANCELLED,
}

_TERMINAL_REASONS: dict[WorkflowStatus, ErrorCode] = {
    WorkflowStatus.EXPIRED: ErrorCode.WORKFLOW_EXPIRED,
    WorkflowStatus.APPROVED: ErrorCode.WORKFLOW_ALREADY_APPROVED,
    WorkflowStatus.REJECTED: ErrorCode.WORKFLOW_ALREADY_REJECTED,
    WorkflowStatus.CANCELLED: ErrorCode.WORKFLOW_CANCELLED,
}

_READ_PERMISSIONS = (Permission.WORKFLOW_READ, Permission.VOTE, Permission.INSTANTIATE)


def closed_reason(workflow: Workflow, now: datetime | None = None) -> ErrorCode | None:
    """Why a workflow no longer accepts votes, or None while it is open."""
    if not workflow.status.is_terminal and workflow.is_expired(now):
        return ErrorCode.WORKFLOW_EXPIRED
    return _TERMINAL_REASONS.get(workflow.status)


def template_scope(template: WorkflowTemplate) -> WorkflowTemplateScope:
    return WorkflowTemplateScope(workflow_template_id=str(template.id))


class WorkflowService:
    """Manages the workflow lifecycle.

    States: PENDING → EVALUATION_IN_PROGRESS → APPROVED/REJECTED, and
    EXPIRED/CANCELLED from either open state. Every write is a compare-and-swap
    on the workflow's ``occ``.
    """

    def __init__(
        self,
        repo: WorkflowRepository,
        template_repo: TemplateRepository,
        audit: AuditService,
        publisher: EventPublisher | None = None,
        settings: WorkflowSettings | None = None,
    ) -> None:
        self._repo = repo
        self._template_repo = template_repo
        self._audit = audit
        self._publisher = publisher
        self._settings = settings or WorkflowSettings()

    async def create_workflow(
        self,
        *,
        template_id: uuid.UUID,
        name: str,
        description: str,
        identity: Identity,
        expires_in_hours: int | None = None,
    ) -> Workflow:
        """Instantiate a template. The workflow snapshots the template's rule."""
        template = await self.get_template(template_id)
        if not identity_has_permission(
            identity,
            Permission.INSTANTIATE,
            template_scope(template),
            parent_space_id=template.space_id,
        ):
            raise AuthorizationError(
                ErrorCode.PERMISSION_DENIED,
                f"{identity.subject_id} may not instantiate template {template_id}",
            )
        if template.status != WorkflowTemplateStatus.ACTIVE:
            raise ConflictError(ErrorCode.WORKFLOW_TEMPLATE_NOT_ACTIVE, f"Template {template_id} is {template.status}")

        hours = expires_in_hours or template.default_expires_in_hours or self._settings.default_expires_in_hours
        if hours < 1:
            raise ValidationError(ErrorCode.WORKFLOW_TEMPLATE_EXPIRES_IN_HOURS_INVALID, f"Invalid expiry: {hours}h")

        workflow = Workflow(
            name=name,
            description=description,
            template_id=template.id,
            approval_rule=template.approval_rule,
            expires_at=datetime.now(UTC) + timedelta(hours=hours),
            created_by=identity.subject_id,
        )
        saved = await self._repo.create(workflow)

        await self._audit.record_event(
            event_type=AuditEventType.WORKFLOW_CREATED,
            entity_type="workflow",
            entity_id=str(saved.id),
            actor_id=identity.subject_id,
            description=f"Workflow created: {name}",
            details={"template_id": str(template.id), "template_version": template.version},
        )
        await self._publish(
            WorkflowCreated(
                workflow_id=saved.id,
                template_id=template.id,
                template_version=template.version,
                expires_at=saved.expires_at,
                created_by=identity.subject_id,
            )
        )
        return saved

    async def get_workflow(self, workflow_id: uuid.UUID, *, identity: Identity | None = None) -> Workflow:
        """Load a workflow, expiring it first if its deadline has passed."""
        workflow = await self._repo.get_by_id(workflow_id)
        if workflow is None:
            raise NotFoundError(ErrorCode.WORKFLOW_NOT_FOUND, f"Workflow {workflow_id} not found")
        if identity is not None:
            await self.ensure_readable(workflow, identity)
        if not workflow.status.is_terminal and workflow.is_expired():
            workflow = await self.transition(workflow, WorkflowStatus.EXPIRED, actor_id=SYSTEM_ACTOR)
        return workflow

    async def list_workflows(
        self,
        *,
        identity: Identity,
        template_id: uuid.UUID | None = None,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Workflow]:
        """Workflows the identity may list (``workflow_list`` on their template)."""
        workflows = await self._repo.list_workflows(template_id=template_id, status=status, limit=limit, offset=offset)
        if identity.is_org_admin:
            return workflows

        templates: dict[uuid.UUID, WorkflowTemplate | None] = {}
        visible = []
        for workflow in workflows:
            if workflow.template_id not in templates:
                templates[workflow.template_id] = await self._template_repo.get_by_id(workflow.template_id)
            template = templates[workflow.template_id]
            if template is not None and identity_has_permission(
                identity,
                Permission.WORKFLOW_LIST,
                template_scope(template),
                parent_space_id=template.space_id,
            ):
                visible.append(workflow)
        return visible

    async def cancel_workflow(self, workflow_id: uuid.UUID, *, identity: Identity) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        template = await self.get_template(workflow.template_id)
        if not identity_has_permission(
            identity,
            Permission.WORKFLOW_CANCEL,
            template_scope(template),
            parent_space_id=template.space_id,
        ):
            raise AuthorizationError(
                ErrorCode.PERMISSION_DENIED,
                f"{identity.subject_id} may not cancel workflow {workflow_id}",
            )
        reason = closed_reason(workflow)
        if reason is not None:
            raise ConflictError(reason, f"Workflow {workflow_id} is {workflow.status}")

        cancelled = await self.transition(workflow, WorkflowStatus.CANCELLED, actor_id=identity.subject_id)
        if cancelled.status != WorkflowStatus.CANCELLED:
            raise ConflictError(_TERMINAL_REASONS[cancelled.status], f"Workflow {workflow_id} is {cancelled.status}")
        return cancelled

    async def cancel_for_template(self, template_id: uuid.UUID, *, actor_id: str) -> int:
        """Cancel every open workflow of a template. Returns how many were cancelled."""
        cancelled = 0
        for workflow in await self._repo.list_non_terminal(template_id=template_id):
            result = await self.transition(workflow, WorkflowStatus.CANCELLED, actor_id=actor_id)
            if result.status == WorkflowStatus.CANCELLED:
                cancelled += 1
        return cancelled

    async def expire_overdue(self, *, now: datetime | None = None, limit: int = 100) -> int:
        """Move open workflows past their deadline to EXPIRED."""
        now = now or datetime.now(UTC)
        expired = 0
        for workflow in await self._repo.list_overdue(now, limit=limit):
            result = await self.transition(workflow, WorkflowStatus.EXPIRED, actor_id=SYSTEM_ACTOR)
            if result.status == WorkflowStatus.EXPIRED:
                expired += 1
        if expired:
            logger.info("Expired %d overdue workflow(s)", expired)
        return expired

    async def has_open_workflows(self, template_id: uuid.UUID) -> bool:
        return bool(await self._repo.list_non_terminal(template_id=template_id))

    async def get_template(self, template_id: uuid.UUID) -> WorkflowTemplate:
        template = await self._template_repo.get_by_id(template_id)
        if template is None:
            raise NotFoundError(ErrorCode.WORKFLOW_TEMPLATE_NOT_FOUND, f"Template {template_id} not found")
        return template

    async def ensure_readable(self, workflow: Workflow, identity: Identity) -> None:
        template = await self.get_template(workflow.template_id)
        scope = template_scope(template)
        if not any(
            identity_has_permission(identity, permission, scope, parent_space_id=template.space_id)
            for permission in _READ_PERMISSIONS
        ):
            raise AuthorizationError(
                ErrorCode.PERMISSION_DENIED,
                f"{identity.subject_id} may not read workflow {workflow.id}",
            )

    async def transition(self, workflow: Workflow, status: WorkflowStatus, *, actor_id: str) -> Workflow:
        """Move an open workflow to a terminal status.

        Retries on version conflicts. If the workflow reaches a terminal
        status concurrently, that workflow is returned unchanged.
        """
        current = workflow
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            if current.status.is_terminal:
                return current
            updated = await self._repo.compare_and_swap(
                current.id,
                current.occ,
                status=status,
                recalculation_required=False,
            )
            if updated is not None:
                await self.notify_transition(current, updated, actor_id=actor_id)
                return updated
            reloaded = await self._repo.get_by_id(current.id)
            if reloaded is None:
                raise NotFoundError(ErrorCode.WORKFLOW_NOT_FOUND, f"Workflow {current.id} not found")
            current = reloaded
        raise ConcurrencyError(f"Workflow {workflow.id} kept changing while moving to {status}")

    async def notify_transition(self, before: Workflow, after: Workflow, *, actor_id: str) -> None:
        """Audit and publish a status change that has been persisted."""
        if before.status == after.status:
            return
        logger.info("Workflow %s: %s -> %s", after.id, before.status, after.status)
        record_transition(before.status, after.status)

        event_type = _FINAL_AUDIT_EVENTS.get(after.status)
        if event_type is not None:
            await self._audit.record_event(
                event_type=event_type,
                entity_type="workflow",
                entity_id=str(after.id),
                actor_id=actor_id,
                description=f"Workflow {after.name} is {after.status}",
                details={"previous_status": str(before.status), "status": str(after.status)},
            )
        await self._publish(
            WorkflowStatusChanged(
                workflow_id=after.id,
                template_id=after.template_id,
                previous_status=before.status,
                status=after.status,
                occ=after.occ,
                actor_id=actor_id,
            )
        )

    async def _publish(self, event: ApprovalEvent) -> None:
        if self._publisher is not None:
            await self._publisher.publish(event)
