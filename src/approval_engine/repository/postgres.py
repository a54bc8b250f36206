"""PostgreSQL repository implementations using SQLAlchemy 2.0 async."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from approval_core.audit import GENESIS_HASH, AuditEvent
from approval_core.db.tables import (
    AuditEventRow,
    EntityRow,
    GroupMembershipRow,
    VoteRow,
    WorkflowRow,
    WorkflowTemplateRow,
)
from approval_core.enums import TERMINAL_WORKFLOW_STATUSES, WorkflowStatus
from approval_core.models import Entity, Vote, Workflow, WorkflowTemplate, voter_key
from sqlalchemy import case, func, select, tuple_, update

if TYPE_CHECKING:
    import uuid
    from collections.abc import Collection

    from approval_core.enums import AuditEventType, EntityType, WorkflowTemplateStatus
    from approval_core.models import Role
    from sqlalchemy.ext.asyncio import AsyncSession

_OPEN = WorkflowRow.status.not_in([str(status) for status in TERMINAL_WORKFLOW_STATUSES])

# pg_advisory_xact_lock key serializing audit chain appends
AUDIT_CHAIN_LOCK_ID = 0x41554454


class PgEntityRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        stmt = (
            select(EntityRow)
            .where(EntityRow.entity_type == entity_type, EntityRow.id == entity_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return Entity.model_validate(row)

    async def compare_and_swap_roles(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_occ: int,
        roles: list[Role],
    ) -> Entity | None:
        stmt = (
            update(EntityRow)
            .where(EntityRow.entity_type == entity_type, EntityRow.id == entity_id, EntityRow.occ == expected_occ)
            .values(roles=[role.model_dump(mode="json") for role in roles], occ=EntityRow.occ + 1)
            .returning(*EntityRow.__table__.c)
        )
        result = await self._session.execute(stmt, execution_options={"synchronize_session": False})
        row = result.mappings().one_or_none()
        if row is None:
            return None
        return Entity.model_validate(dict(row))


class PgGroupMembershipRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def members_of(
        self,
        group_ids: Collection[str],
        voter_keys: Collection[str] | None = None,
    ) -> dict[str, set[str]]:
        if not group_ids:
            return {}
        stmt = select(
            GroupMembershipRow.group_id, GroupMembershipRow.entity_type, GroupMembershipRow.subject_id
        ).where(GroupMembershipRow.group_id.in_(list(group_ids)))
        if voter_keys is not None:
            if not voter_keys:
                return {}
            pairs = [tuple(key.split(":", 1)) for key in voter_keys]
            stmt = stmt.where(tuple_(GroupMembershipRow.entity_type, GroupMembershipRow.subject_id).in_(pairs))
        result = await self._session.execute(stmt)

        members: dict[str, set[str]] = {}
        for group_id, entity_type, subject_id in result.all():
            members.setdefault(group_id, set()).add(voter_key(entity_type, subject_id))
        return members


class PgTemplateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, template: WorkflowTemplate) -> WorkflowTemplate:
        row = WorkflowTemplateRow(
            id=template.id,
            name=template.name,
            description=template.description,
            version=template.version,
            space_id=template.space_id,
            status=template.status,
            approval_rule=template.approval_rule.model_dump(mode="json"),
            default_expires_in_hours=template.default_expires_in_hours,
            allow_voting_on_deprecated_template=template.allow_voting_on_deprecated_template,
            created_by=template.created_by,
            created_at=template.created_at,
            updated_at=template.updated_at,
        )
        self._session.add(row)
        await self._session.flush()
        return WorkflowTemplate.model_validate(row)

    async def get_by_id(self, template_id: uuid.UUID) -> WorkflowTemplate | None:
        row = await self._session.get(WorkflowTemplateRow, template_id)
        if row is None:
            return None
        return WorkflowTemplate.model_validate(row)

    async def transition_status(
        self,
        template_id: uuid.UUID,
        expected: WorkflowTemplateStatus,
        status: WorkflowTemplateStatus,
        *,
        allow_voting_on_deprecated_template: bool | None = None,
    ) -> WorkflowTemplate | None:
        values: dict[str, object] = {"status": status, "updated_at": datetime.now(UTC)}
        if allow_voting_on_deprecated_template is not None:
            values["allow_voting_on_deprecated_template"] = allow_voting_on_deprecated_template
        stmt = (
            update(WorkflowTemplateRow)
            .where(WorkflowTemplateRow.id == template_id, WorkflowTemplateRow.status == expected)
            .values(**values)
            .returning(*WorkflowTemplateRow.__table__.c)
        )
        result = await self._session.execute(stmt, execution_options={"synchronize_session": False})
        row = result.mappings().one_or_none()
        if row is None:
            return None
        return WorkflowTemplate.model_validate(dict(row))

    async def list_templates(
        self,
        *,
        space_id: str | None = None,
        status: WorkflowTemplateStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowTemplate]:
        stmt = select(WorkflowTemplateRow)
        if space_id:
            stmt = stmt.where(WorkflowTemplateRow.space_id == space_id)
        if status:
            stmt = stmt.where(WorkflowTemplateRow.status == status)
        stmt = stmt.order_by(WorkflowTemplateRow.name, WorkflowTemplateRow.version.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return [WorkflowTemplate.model_validate(r) for r in result.scalars()]


class PgWorkflowRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, workflow: Workflow) -> Workflow:
        row = WorkflowRow(
            id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            status=workflow.status,
            template_id=workflow.template_id,
            approval_rule=workflow.approval_rule.model_dump(mode="json"),
            expires_at=workflow.expires_at,
            recalculation_required=workflow.recalculation_required,
            occ=workflow.occ,
            created_by=workflow.created_by,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
        )
        self._session.add(row)
        await self._session.flush()
        return Workflow.model_validate(row)

    async def get_by_id(self, workflow_id: uuid.UUID) -> Workflow | None:
        stmt = select(WorkflowRow).where(WorkflowRow.id == workflow_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return Workflow.model_validate(row)

    async def compare_and_swap(
        self,
        workflow_id: uuid.UUID,
        expected_occ: int,
        *,
        status: WorkflowStatus,
        recalculation_required: bool,
    ) -> Workflow | None:
        stmt = (
            update(WorkflowRow)
            .where(WorkflowRow.id == workflow_id, WorkflowRow.occ == expected_occ)
            .values(
                status=status,
                recalculation_required=recalculation_required,
                occ=WorkflowRow.occ + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(*WorkflowRow.__table__.c)
        )
        result = await self._session.execute(stmt, execution_options={"synchronize_session": False})
        row = result.mappings().one_or_none()
        if row is None:
            return None
        return Workflow.model_validate(dict(row))

    async def mark_recalculation_required(self, workflow_id: uuid.UUID, now: datetime) -> Workflow | None:
        # No occ predicate: concurrent acceptances serialize on the row lock instead of failing.
        stmt = (
            update(WorkflowRow)
            .where(WorkflowRow.id == workflow_id, _OPEN, WorkflowRow.expires_at > now)
            .values(
                status=case(
                    (WorkflowRow.status == str(WorkflowStatus.PENDING), str(WorkflowStatus.EVALUATION_IN_PROGRESS)),
                    else_=WorkflowRow.status,
                ),
                recalculation_required=True,
                occ=WorkflowRow.occ + 1,
                updated_at=now,
            )
            .returning(*WorkflowRow.__table__.c)
        )
        result = await self._session.execute(stmt, execution_options={"synchronize_session": False})
        row = result.mappings().one_or_none()
        if row is None:
            return None
        return Workflow.model_validate(dict(row))

    async def list_workflows(
        self,
        *,
        template_id: uuid.UUID | None = None,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Workflow]:
        stmt = select(WorkflowRow)
        if template_id:
            stmt = stmt.where(WorkflowRow.template_id == template_id)
        if status:
            stmt = stmt.where(WorkflowRow.status == status)
        stmt = stmt.order_by(WorkflowRow.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return [Workflow.model_validate(r) for r in result.scalars()]

    async def list_non_terminal(self, *, template_id: uuid.UUID | None = None) -> list[Workflow]:
        stmt = select(WorkflowRow).where(_OPEN)
        if template_id:
            stmt = stmt.where(WorkflowRow.template_id == template_id)
        result = await self._session.execute(stmt.order_by(WorkflowRow.created_at))
        return [Workflow.model_validate(r) for r in result.scalars()]

    async def list_overdue(self, now: datetime, *, limit: int = 100) -> list[Workflow]:
        stmt = (
            select(WorkflowRow)
            .where(_OPEN, WorkflowRow.expires_at <= now)
            .order_by(WorkflowRow.expires_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [Workflow.model_validate(r) for r in result.scalars()]

    async def list_flagged(self, updated_before: datetime, *, limit: int = 100) -> list[Workflow]:
        stmt = (
            select(WorkflowRow)
            .where(_OPEN, WorkflowRow.recalculation_required.is_(True), WorkflowRow.updated_at <= updated_before)
            .order_by(WorkflowRow.updated_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [Workflow.model_validate(r) for r in result.scalars()]


class PgVoteRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, vote: Vote) -> Vote:
        row = VoteRow(
            id=vote.id,
            workflow_id=vote.workflow_id,
            voter_id=vote.voter_id,
            voter_type=vote.voter_type,
            vote_type=vote.vote_type,
            voted_for_groups=list(vote.voted_for_groups),
            reason=vote.reason,
            created_at=vote.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return Vote.model_validate(row)

    async def list_by_workflow(self, workflow_id: uuid.UUID) -> list[Vote]:
        stmt = select(VoteRow).where(VoteRow.workflow_id == workflow_id).order_by(VoteRow.created_at)
        result = await self._session.execute(stmt)
        return [Vote.model_validate(r) for r in result.scalars()]

    async def has_voted(self, workflow_id: uuid.UUID, voter_id: str, voter_type: EntityType) -> bool:
        stmt = (
            select(VoteRow.id)
            .where(VoteRow.workflow_id == workflow_id, VoteRow.voter_id == voter_id, VoteRow.voter_type == voter_type)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None


class PgAuditRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, event: AuditEvent) -> AuditEvent:
        await self._session.execute(select(func.pg_advisory_xact_lock(AUDIT_CHAIN_LOCK_ID)))
        head = await self._session.execute(
            select(AuditEventRow.event_hash).order_by(AuditEventRow.sequence.desc()).limit(1)
        )
        linked = event.chained(head.scalar_one_or_none() or GENESIS_HASH)

        row = AuditEventRow(
            id=linked.id,
            event_type=linked.event_type,
            entity_type=linked.entity_type,
            entity_id=linked.entity_id,
            actor_id=linked.actor_id,
            description=linked.description,
            details=linked.details,
            occurred_at=linked.occurred_at,
            previous_hash=linked.previous_hash,
            event_hash=linked.event_hash,
        )
        self._session.add(row)
        await self._session.flush()
        return AuditEvent.model_validate(row)

    async def get_chain(self, *, limit: int = 1000) -> list[AuditEvent]:
        stmt = select(AuditEventRow).order_by(AuditEventRow.sequence).limit(limit)
        result = await self._session.execute(stmt)
        return [AuditEvent.model_validate(r) for r in result.scalars()]

    async def list_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        stmt = select(AuditEventRow)
        if event_type:
            stmt = stmt.where(AuditEventRow.event_type == event_type)
        if entity_id:
            stmt = stmt.where(AuditEventRow.entity_id == entity_id)
        stmt = stmt.order_by(AuditEventRow.sequence.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return [AuditEvent.model_validate(r) for r in result.scalars()]
