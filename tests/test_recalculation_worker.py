"""Tests for the recalculation worker's job handling and sweeps."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest
from approval_core.enums import WorkflowStatus, WorkflowTemplateStatus
from approval_core.models import Identity, Workflow, WorkflowTemplate
from approval_engine.domain.recalculation_service import RecalculationService
from approval_engine.domain.template_service import TemplateService
from approval_engine.domain.vote_service import VoteService
from approval_engine.domain.workflow_service import WorkflowService
from approval_engine.events.recalculation_queue import JobOutcome, RecalculationJob
from approval_engine.worker.recalculation_worker import RecalculationWorker, WorkerServices
from conftest import (
    GROUP_1,
    MockGroupMembershipRepository,
    MockRecalculationQueue,
    MockWorkflowRepository,
    voter,
)
from sqlalchemy.exc import OperationalError


@pytest.fixture
def worker(
    recalculation_service: RecalculationService,
    workflow_service: WorkflowService,
    template_service: TemplateService,
    queue: MockRecalculationQueue,
) -> RecalculationWorker:
    services = WorkerServices(
        recalculation=recalculation_service,
        workflows=workflow_service,
        templates=template_service,
    )

    @asynccontextmanager
    async def scope() -> AsyncIterator[WorkerServices]:
        yield services

    return RecalculationWorker(scope, queue)


def _job(workflow_id: uuid.UUID, occ: int = 0) -> bytes:
    return RecalculationJob(workflow_id=workflow_id, occ=occ).model_dump_json().encode()


class TestHandle:
    async def test_recalculates_and_acks(
        self,
        worker: RecalculationWorker,
        vote_service: VoteService,
        workflow_repo: MockWorkflowRepository,
        membership_repo: MockGroupMembershipRepository,
        queue: MockRecalculationQueue,
        workflow: Workflow,
    ) -> None:
        membership_repo.add(GROUP_1, "alice", "bob")
        await vote_service.cast_vote(workflow.id, identity=voter("alice"), vote_type="APPROVE")
        await vote_service.cast_vote(workflow.id, identity=voter("bob"), vote_type="APPROVE")

        outcomes = [await worker.handle(_job(wf_id, occ)) for wf_id, occ in queue.jobs]

        assert outcomes == [JobOutcome.ACK, JobOutcome.ACK]
        assert (await workflow_repo.get_by_id(workflow.id)).status == WorkflowStatus.APPROVED

    async def test_malformed_payload_acked(self, worker: RecalculationWorker) -> None:
        assert await worker.handle(b'{"workflow_id": "nope"}') == JobOutcome.ACK

    async def test_unknown_workflow_acked(self, worker: RecalculationWorker) -> None:
        assert await worker.handle(_job(uuid.uuid4())) == JobOutcome.ACK

    async def test_job_ahead_of_store_retried(self, worker: RecalculationWorker, workflow: Workflow) -> None:
        assert await worker.handle(_job(workflow.id, occ=7)) == JobOutcome.RETRY

    async def test_exhausted_retried(
        self,
        worker: RecalculationWorker,
        vote_service: VoteService,
        workflow_repo: MockWorkflowRepository,
        membership_repo: MockGroupMembershipRepository,
        workflow: Workflow,
    ) -> None:
        membership_repo.add(GROUP_1, "alice")
        await vote_service.cast_vote(workflow.id, identity=voter("alice"), vote_type="APPROVE")
        workflow_repo.concurrent_writes = 10

        assert await worker.handle(_job(workflow.id)) == JobOutcome.RETRY

    async def test_database_error_retried(
        self,
        worker: RecalculationWorker,
        workflow_repo: MockWorkflowRepository,
        workflow: Workflow,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken(workflow_id: uuid.UUID) -> Workflow | None:
            raise OperationalError("SELECT 1", {}, Exception("connection reset"))

        monkeypatch.setattr(workflow_repo, "get_by_id", broken)

        assert await worker.handle(_job(workflow.id)) == JobOutcome.RETRY


class TestSweep:
    async def test_sweep(
        self,
        worker: RecalculationWorker,
        template_service: TemplateService,
        workflow_repo: MockWorkflowRepository,
        template: WorkflowTemplate,
        workflow: Workflow,
        admin: Identity,
    ) -> None:
        await template_service.deprecate_template(template.id, identity=admin)
        workflow_repo.put(workflow.model_copy(update={"expires_at": datetime.now(UTC) - timedelta(seconds=1)}))

        await worker.sweep()

        assert (await workflow_repo.get_by_id(workflow.id)).status == WorkflowStatus.EXPIRED
        assert (await template_service.get_template(template.id)).status == WorkflowTemplateStatus.DEPRECATED
