"""Recomputes workflow status from the vote ledger.

Runs on the worker, once per queued job. Jobs are delivered at least once and
may pile up for the same workflow; the ``recalculation_required`` flag lets
every job after the first in a burst finish without re-evaluating.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from approval_core.enums import Verdict, WorkflowStatus
from approval_core.errors import ConcurrencyError, RecalculationRetriesExhausted
from approval_core.rules import evaluate, voting_group_ids
from approval_core.settings import RecalculationSettings
from approval_core.telemetry import get_tracer

from approval_engine.domain.workflow_service import SYSTEM_ACTOR

if TYPE_CHECKING:
    import uuid

    from approval_core.models import Workflow

    from approval_engine.domain.workflow_service import WorkflowService
    from approval_engine.repository.protocols import (
        GroupMembershipRepository,
        RecalculationQueue,
        VoteRepository,
        WorkflowRepository,
    )

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_STATUS_BY_VERDICT: dict[Verdict, WorkflowStatus | None] = {
    Verdict.APPROVED: WorkflowStatus.APPROVED,
    Verdict.REJECTED: WorkflowStatus.REJECTED,
    Verdict.PENDING: None,
}


class RecalculationService:
    def __init__(
        self,
        workflow_repo: WorkflowRepository,
        vote_repo: VoteRepository,
        membership: GroupMembershipRepository,
        workflow_service: WorkflowService,
        settings: RecalculationSettings | None = None,
    ) -> None:
        self._workflow_repo = workflow_repo
        self._vote_repo = vote_repo
        self._membership = membership
        self._workflow_service = workflow_service
        self._settings = settings or RecalculationSettings()

    async def recalculate(self, workflow_id: uuid.UUID, *, min_occ: int = 0) -> Workflow | None:
        """Bring a workflow's status in line with its ledger.

        Args:
            workflow_id: Workflow to recalculate.
            min_occ: Version the job was enqueued at. A lower stored version
                means the enqueuing transaction is not visible yet.

        Returns:
            The workflow after recalculation, or None if it does not exist.

        Raises:
            ConcurrencyError: the workflow has not reached ``min_occ`` yet.
            RecalculationRetriesExhausted: lost the version race on every attempt.
        """
        with tracer.start_as_current_span("workflow.recalculate") as span:
            span.set_attribute("workflow.id", str(workflow_id))
            for attempt in range(1, self._settings.max_attempts + 1):
                workflow = await self._workflow_repo.get_by_id(workflow_id)
                if workflow is None:
                    logger.warning("Recalculation requested for unknown workflow %s", workflow_id)
                    return None
                if workflow.occ < min_occ:
                    raise ConcurrencyError(f"Workflow {workflow_id} is at occ {workflow.occ}, job expects {min_occ}")

                updated = await self._apply(workflow)
                if updated is not None:
                    span.set_attribute("workflow.status", str(updated.status))
                    span.set_attribute("recalculation.attempts", attempt)
                    return updated
                logger.debug("Recalculation of %s lost version race (attempt %d)", workflow_id, attempt)

            span.set_attribute("recalculation.attempts", self._settings.max_attempts)
            raise RecalculationRetriesExhausted(
                f"Workflow {workflow_id} changed on each of {self._settings.max_attempts} attempts"
            )

    async def _apply(self, workflow: Workflow) -> Workflow | None:
        """One read-evaluate-swap pass. None when the swap lost to a concurrent write."""
        if workflow.status.is_terminal:
            return workflow

        if workflow.is_expired():
            target = WorkflowStatus.EXPIRED
        elif not workflow.recalculation_required:
            return workflow
        else:
            target = await self._evaluate(workflow) or workflow.status

        updated = await self._workflow_repo.compare_and_swap(
            workflow.id,
            workflow.occ,
            status=target,
            recalculation_required=False,
        )
        if updated is not None:
            await self._workflow_service.notify_transition(workflow, updated, actor_id=SYSTEM_ACTOR)
        return updated

    async def _evaluate(self, workflow: Workflow) -> WorkflowStatus | None:
        votes = await self._vote_repo.list_by_workflow(workflow.id)
        members = await self._membership.members_of(
            voting_group_ids(workflow.approval_rule),
            {vote.voter_key for vote in votes},
        )
        result = evaluate(workflow.approval_rule, votes, members)
        logger.debug("Workflow %s evaluated %s over %d vote(s)", workflow.id, result.verdict, len(votes))
        return _STATUS_BY_VERDICT[result.verdict]

    async def requeue_flagged(self, queue: RecalculationQueue, *, older_than: timedelta, limit: int = 100) -> int:
        """Re-enqueue open workflows whose recalculation job seems lost."""
        cutoff = datetime.now(UTC) - older_than
        flagged = await self._workflow_repo.list_flagged(cutoff, limit=limit)
        for workflow in flagged:
            await queue.enqueue(workflow.id, workflow.occ)
        if flagged:
            logger.info("Re-enqueued %d workflow(s) still awaiting recalculation", len(flagged))
        return len(flagged)
