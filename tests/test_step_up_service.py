"""Tests for single-use step-up contexts."""

from __future__ import annotations

import asyncio

import pytest
from approval_core.enums import StepUpOperation
from approval_core.errors import AuthorizationError, ConsistencyError, ErrorCode
from approval_core.models import Identity, StepUpClaim
from approval_engine.domain.step_up_service import StepUpService

OP = StepUpOperation.WORKFLOW_VOTE


def _presenting(subject_id: str, resource: str, jti: str) -> Identity:
    return Identity(subject_id=subject_id, step_up=StepUpClaim(operation=OP, resource=resource, jti=jti))


class TestStepUpService:
    async def test_issue_is_idempotent(self, step_up_service: StepUpService) -> None:
        first = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")
        second = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")
        other = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-2")

        assert first.jti == second.jti
        assert other.jti != first.jti

    async def test_consumed_once(self, step_up_service: StepUpService) -> None:
        context = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")

        await step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=context.jti)
        with pytest.raises(ConsistencyError) as exc_info:
            await step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=context.jti)
        assert exc_info.value.code == ErrorCode.TOKEN_NOT_FOUND

    async def test_concurrent_consumers_one_wins(self, step_up_service: StepUpService) -> None:
        context = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")

        results = await asyncio.gather(
            step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=context.jti),
            step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=context.jti),
            return_exceptions=True,
        )

        assert results.count(None) == 1
        failures = [r for r in results if r is not None]
        assert len(failures) == 1
        assert isinstance(failures[0], ConsistencyError)
        assert failures[0].code == ErrorCode.TOKEN_NOT_FOUND

    async def test_new_context_after_consumption(self, step_up_service: StepUpService) -> None:
        first = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")
        await step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=first.jti)

        second = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")
        assert second.jti != first.jti

    def test_claim_returned_for_matching_action(self) -> None:
        claim = StepUpService.check_claim(_presenting("alice", "wf-1", "jti-1"), OP, "wf-1")
        assert claim.jti == "jti-1"

    def test_missing_claim(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            StepUpService.check_claim(Identity(subject_id="alice"), OP, "wf-1")
        assert exc_info.value.code == ErrorCode.STEP_UP_CONTEXT_MISSING

    def test_resource_mismatch(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            StepUpService.check_claim(_presenting("alice", "wf-1", "jti-1"), OP, "wf-2")
        assert exc_info.value.code == ErrorCode.STEP_UP_RESOURCE_MISMATCH

    async def test_claim_check_leaves_context_usable(self, step_up_service: StepUpService) -> None:
        context = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")

        StepUpService.check_claim(_presenting("alice", "wf-1", context.jti), OP, "wf-1")

        await step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=context.jti)

    async def test_context_bound_to_subject(self, step_up_service: StepUpService) -> None:
        context = await step_up_service.issue(subject_id="alice", operation=OP, resource="wf-1")
        with pytest.raises(ConsistencyError):
            await step_up_service.consume(subject_id="mallory", operation=OP, resource="wf-1", jti=context.jti)

        await step_up_service.consume(subject_id="alice", operation=OP, resource="wf-1", jti=context.jti)
