"""Vote casting and eligibility."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from approval_core.enums import AuditEventType, Permission, StepUpOperation, VoteStatus, VoteType
from approval_core.errors import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from approval_core.models import VOTE_REASON_MAX_LENGTH, CanVoteResult, Vote
from approval_core.permissions import identity_has_permission
from approval_core.rules import high_privilege_group_ids, voting_group_ids
from approval_core.telemetry.metrics import record_vote_accepted

from approval_engine.domain.workflow_service import closed_reason, template_scope
from approval_engine.events.messages import VoteCast

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from approval_core.models import Identity, Workflow, WorkflowTemplate

    from approval_engine.domain.audit_service import AuditService
    from approval_engine.domain.step_up_service import StepUpService
    from approval_engine.domain.workflow_service import WorkflowService
    from approval_engine.repository.protocols import (
        EventPublisher,
        GroupMembershipRepository,
        RecalculationQueue,
        VoteRepository,
        WorkflowRepository,
    )

logger = logging.getLogger(__name__)


class VoteService:
    """Accepts votes into the ledger.

    Acceptance is synchronous; the resulting status change is computed later
    by the recalculation worker. A vote is stored only after every check has
    passed, in the same transaction as the workflow's version bump. The bump
    carries no version check, so concurrent voters serialize on the workflow
    row instead of failing; the step-up context is consumed after it, so a vote
    that is turned away leaves the context usable.
    """

    def __init__(
        self,
        repo: VoteRepository,
        workflow_repo: WorkflowRepository,
        membership: GroupMembershipRepository,
        workflow_service: WorkflowService,
        step_up: StepUpService,
        queue: RecalculationQueue,
        audit: AuditService,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._repo = repo
        self._workflow_repo = workflow_repo
        self._membership = membership
        self._workflow_service = workflow_service
        self._step_up = step_up
        self._queue = queue
        self._audit = audit
        self._publisher = publisher

    async def can_vote(self, workflow_id: uuid.UUID, identity: Identity) -> CanVoteResult:
        workflow = await self._workflow_service.get_workflow(workflow_id)
        already_voted = await self._repo.has_voted(workflow.id, identity.subject_id, identity.entity_type)
        vote_status = VoteStatus.ALREADY_VOTED if already_voted else VoteStatus.VOTE_PENDING

        voter_groups = await self._voter_groups(workflow, identity)
        require_high_privilege = bool(voter_groups & high_privilege_group_ids(workflow.approval_rule))

        reason = closed_reason(workflow)
        if reason is None:
            template = await self._workflow_service.get_template(workflow.template_id)
            if not template.accepts_votes:
                reason = ErrorCode.WORKFLOW_TEMPLATE_NOT_ACTIVE
            elif not self._eligible(template, identity):
                reason = ErrorCode.ENTITY_NOT_ELIGIBLE_TO_VOTE
            elif not voter_groups:
                reason = ErrorCode.ENTITY_NOT_IN_REQUIRED_GROUP

        return CanVoteResult(
            can_vote=reason is None,
            vote_status=vote_status,
            cant_vote_reason=reason,
            require_high_privilege=require_high_privilege,
        )

    async def cast_vote(
        self,
        workflow_id: uuid.UUID,
        *,
        identity: Identity,
        vote_type: str,
        voted_for_groups: Sequence[str] = (),
        reason: str | None = None,
    ) -> Vote:
        """Record a vote and schedule recalculation.

        ``voted_for_groups`` defaults to every rule group the voter belongs to.

        Raises:
            ConflictError: the workflow is closed or its template no longer accepts votes.
            ValidationError: unknown vote type or oversized reason.
            AuthorizationError: not eligible, not in the declared groups, or step-up missing.
            ConsistencyError: the presented step-up context was already used.
        """
        workflow = await self._workflow_service.get_workflow(workflow_id)
        closed = closed_reason(workflow)
        if closed is not None:
            raise ConflictError(closed, f"Workflow {workflow_id} is {workflow.status}")

        try:
            parsed_type = VoteType(vote_type)
        except ValueError:
            raise ValidationError(ErrorCode.VOTE_TYPE_INVALID, f"Unknown vote type: {vote_type!r}") from None
        if reason is not None and len(reason) > VOTE_REASON_MAX_LENGTH:
            raise ValidationError(
                ErrorCode.VOTE_REASON_TOO_LONG,
                f"Vote reason exceeds {VOTE_REASON_MAX_LENGTH} characters",
            )

        template = await self._workflow_service.get_template(workflow.template_id)
        if not template.accepts_votes:
            raise ConflictError(ErrorCode.WORKFLOW_TEMPLATE_NOT_ACTIVE, f"Template {template.id} is {template.status}")
        if not self._eligible(template, identity):
            raise AuthorizationError(
                ErrorCode.ENTITY_NOT_ELIGIBLE_TO_VOTE,
                f"{identity.subject_id} has no vote permission on template {template.id}",
            )

        groups = await self._resolve_groups(workflow, identity, voted_for_groups)

        claim = None
        if high_privilege_group_ids(workflow.approval_rule) & groups:
            claim = self._step_up.check_claim(identity, StepUpOperation.WORKFLOW_VOTE, str(workflow.id))

        accepted = await self._accept(workflow)
        # Last check before the insert; a failure rolls the flag back with the transaction
        if claim is not None:
            await self._step_up.consume(
                subject_id=identity.subject_id,
                operation=StepUpOperation.WORKFLOW_VOTE,
                resource=str(workflow.id),
                jti=claim.jti,
            )

        vote = await self._repo.create(
            Vote(
                workflow_id=workflow.id,
                voter_id=identity.subject_id,
                voter_type=identity.entity_type,
                vote_type=parsed_type,
                voted_for_groups=tuple(sorted(groups)),
                reason=reason,
            )
        )
        logger.info("Accepted %s vote %s on workflow %s at occ %d", parsed_type, vote.id, workflow.id, accepted.occ)
        record_vote_accepted(parsed_type, high_privilege=claim is not None)

        await self._audit.record_event(
            event_type=AuditEventType.VOTE_CAST,
            entity_type="workflow",
            entity_id=str(workflow.id),
            actor_id=identity.subject_id,
            description=f"{parsed_type} vote on workflow {workflow.name}",
            details={"vote_id": str(vote.id), "vote_type": str(parsed_type), "groups": list(vote.voted_for_groups)},
        )
        await self._queue.enqueue(workflow.id, accepted.occ)
        if self._publisher is not None:
            await self._publisher.publish(
                VoteCast(
                    workflow_id=workflow.id,
                    vote_id=vote.id,
                    voter_id=vote.voter_id,
                    voter_type=vote.voter_type,
                    vote_type=vote.vote_type,
                    voted_for_groups=vote.voted_for_groups,
                    occ=accepted.occ,
                )
            )
        return vote

    async def list_votes(self, workflow_id: uuid.UUID, *, identity: Identity | None = None) -> list[Vote]:
        workflow = await self._workflow_service.get_workflow(workflow_id, identity=identity)
        return await self._repo.list_by_workflow(workflow.id)

    async def _accept(self, workflow: Workflow) -> Workflow:
        """Flag the workflow for recalculation and bump its version, whatever that version is now."""
        accepted = await self._workflow_repo.mark_recalculation_required(workflow.id, datetime.now(UTC))
        if accepted is not None:
            return accepted

        reloaded = await self._workflow_repo.get_by_id(workflow.id)
        if reloaded is None:
            raise NotFoundError(ErrorCode.WORKFLOW_NOT_FOUND, f"Workflow {workflow.id} not found")
        closed = closed_reason(reloaded) or ErrorCode.WORKFLOW_EXPIRED
        raise ConflictError(closed, f"Workflow {workflow.id} is {reloaded.status}")

    async def _resolve_groups(
        self,
        workflow: Workflow,
        identity: Identity,
        declared: Sequence[str],
    ) -> frozenset[str]:
        voter_groups = await self._voter_groups(workflow, identity)
        if not declared:
            if not voter_groups:
                raise AuthorizationError(
                    ErrorCode.ENTITY_NOT_IN_REQUIRED_GROUP,
                    f"{identity.subject_id} is not a member of any group this workflow requires",
                )
            return voter_groups

        rule_groups = voting_group_ids(workflow.approval_rule)
        for group_id in declared:
            if group_id not in rule_groups or group_id not in voter_groups:
                raise AuthorizationError(
                    ErrorCode.ENTITY_NOT_IN_GROUP,
                    f"{identity.subject_id} cannot vote for group {group_id}",
                )
        return frozenset(declared)

    async def _voter_groups(self, workflow: Workflow, identity: Identity) -> frozenset[str]:
        """Rule groups the identity currently belongs to."""
        rule_groups = voting_group_ids(workflow.approval_rule)
        members = await self._membership.members_of(rule_groups, [identity.voter_key])
        return frozenset(group_id for group_id, keys in members.items() if identity.voter_key in keys)

    @staticmethod
    def _eligible(template: WorkflowTemplate, identity: Identity) -> bool:
        return identity_has_permission(
            identity,
            Permission.VOTE,
            template_scope(template),
            parent_space_id=template.space_id,
        )
