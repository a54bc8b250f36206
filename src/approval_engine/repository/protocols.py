"""Repository and collaborator interfaces consumed by the domain services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import uuid
    from collections.abc import Collection
    from datetime import datetime

    from approval_core.audit import AuditEvent
    from approval_core.enums import (
        AuditEventType,
        EntityType,
        StepUpOperation,
        WorkflowStatus,
        WorkflowTemplateStatus,
    )
    from approval_core.models import Entity, Role, StepUpContext, Vote, Workflow, WorkflowTemplate

    from approval_engine.events.messages import ApprovalEvent


class EntityRepository(Protocol):
    """Users and agents with their role sets."""

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None: ...

    async def compare_and_swap_roles(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_occ: int,
        roles: list[Role],
    ) -> Entity | None:
        """Replace the role set if ``occ`` still equals ``expected_occ``; None otherwise."""
        ...


class GroupMembershipRepository(Protocol):
    """Read-only view of the external group membership store.

    Members are users or agents, identified by voter key (``"<entity_type>:<subject_id>"``).
    """

    async def members_of(
        self,
        group_ids: Collection[str],
        voter_keys: Collection[str] | None = None,
    ) -> dict[str, set[str]]:
        """Voter keys of each group's members, optionally restricted to ``voter_keys``."""
        ...


class TemplateRepository(Protocol):
    async def create(self, template: WorkflowTemplate) -> WorkflowTemplate: ...

    async def get_by_id(self, template_id: uuid.UUID) -> WorkflowTemplate | None: ...

    async def transition_status(
        self,
        template_id: uuid.UUID,
        expected: WorkflowTemplateStatus,
        status: WorkflowTemplateStatus,
        *,
        allow_voting_on_deprecated_template: bool | None = None,
    ) -> WorkflowTemplate | None:
        """Move the template to ``status`` only if it is still ``expected``; None otherwise."""
        ...

    async def list_templates(
        self,
        *,
        space_id: str | None = None,
        status: WorkflowTemplateStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowTemplate]: ...


class WorkflowRepository(Protocol):
    async def create(self, workflow: Workflow) -> Workflow: ...

    async def get_by_id(self, workflow_id: uuid.UUID) -> Workflow | None:
        """Fresh read; never served from a stale cache."""
        ...

    async def compare_and_swap(
        self,
        workflow_id: uuid.UUID,
        expected_occ: int,
        *,
        status: WorkflowStatus,
        recalculation_required: bool,
    ) -> Workflow | None:
        """Write status and flag, bump ``occ``, only if ``occ == expected_occ``.

        Returns the updated workflow, or None on a version mismatch.
        """
        ...

    async def mark_recalculation_required(self, workflow_id: uuid.UUID, now: datetime) -> Workflow | None:
        """Flag an open, unexpired workflow and bump ``occ`` whatever its current value.

        PENDING moves to EVALUATION_IN_PROGRESS. Returns None if the workflow
        is missing, terminal or past ``expires_at``.
        """
        ...

    async def list_workflows(
        self,
        *,
        template_id: uuid.UUID | None = None,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Workflow]: ...

    async def list_non_terminal(self, *, template_id: uuid.UUID | None = None) -> list[Workflow]: ...

    async def list_overdue(self, now: datetime, *, limit: int = 100) -> list[Workflow]:
        """Non-terminal workflows whose ``expires_at`` has passed."""
        ...

    async def list_flagged(self, updated_before: datetime, *, limit: int = 100) -> list[Workflow]:
        """Non-terminal workflows still marked ``recalculation_required``."""
        ...


class VoteRepository(Protocol):
    async def create(self, vote: Vote) -> Vote: ...

    async def list_by_workflow(self, workflow_id: uuid.UUID) -> list[Vote]: ...

    async def has_voted(self, workflow_id: uuid.UUID, voter_id: str, voter_type: EntityType) -> bool: ...


class AuditRepository(Protocol):
    async def append(self, event: AuditEvent) -> AuditEvent:
        """Link ``event`` after the current chain head and store it.

        Appends are serialized: the head read and the insert happen under one
        chain-wide lock held until the surrounding transaction ends.
        """
        ...

    async def get_chain(self, *, limit: int = 1000) -> list[AuditEvent]:
        """Oldest events first, in append order."""
        ...

    async def list_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]: ...


class StepUpStore(Protocol):
    """Single-use step-up contexts with expiry."""

    async def save(self, context: StepUpContext, ttl_seconds: int) -> StepUpContext:
        """Store ``context`` unless one is already active for the same subject,
        operation and resource, in which case the active one is returned."""
        ...

    async def consume(self, subject_id: str, operation: StepUpOperation, resource: str, jti: str) -> bool:
        """Atomically delete the matching context. False if absent or not matching."""
        ...


class RecalculationQueue(Protocol):
    async def enqueue(self, workflow_id: uuid.UUID, occ: int) -> None: ...


class EventPublisher(Protocol):
    async def publish(self, event: ApprovalEvent) -> None: ...
