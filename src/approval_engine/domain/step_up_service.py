"""Single-use step-up (high privilege) contexts.

A context is issued after the identity re-authenticates and is bound to one
subject, one operation and one resource. Consuming it deletes it; a context
that is absent, expired or already used can never authorize anything.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from approval_core.errors import AuthorizationError, ConsistencyError, ErrorCode
from approval_core.models import StepUpContext
from approval_core.settings import StepUpSettings

if TYPE_CHECKING:
    from approval_core.enums import StepUpOperation
    from approval_core.models import Identity, StepUpClaim

    from approval_engine.repository.protocols import StepUpStore

logger = logging.getLogger(__name__)


class StepUpService:
    def __init__(self, store: StepUpStore, settings: StepUpSettings | None = None) -> None:
        self._store = store
        self._settings = settings or StepUpSettings()

    async def issue(self, *, subject_id: str, operation: StepUpOperation, resource: str) -> StepUpContext:
        """Issue a context, or return the one already active for the same triple."""
        context = StepUpContext(subject_id=subject_id, operation=operation, resource=resource)
        stored = await self._store.save(context, self._settings.ttl_seconds)
        logger.info("Step-up context %s active for %s on %s %s", stored.jti, subject_id, operation, resource)
        return stored

    async def consume(self, *, subject_id: str, operation: StepUpOperation, resource: str, jti: str) -> None:
        """Use a context up. Raises ConsistencyError(token_not_found) if it is gone."""
        if not await self._store.consume(subject_id, operation, resource, jti):
            logger.warning("Step-up context %s for %s not found or already used", jti, subject_id)
            raise ConsistencyError(ErrorCode.TOKEN_NOT_FOUND, "Step-up context not found or already used")

    @staticmethod
    def check_claim(identity: Identity, operation: StepUpOperation, resource: str) -> StepUpClaim:
        """Return the identity's step-up claim if it names this exact action. Does not touch the store."""
        claim = identity.step_up
        if claim is None:
            raise AuthorizationError(
                ErrorCode.STEP_UP_CONTEXT_MISSING,
                f"{operation} on {resource} requires a step-up context",
            )
        if claim.operation != operation:
            raise AuthorizationError(
                ErrorCode.STEP_UP_OPERATION_MISMATCH,
                f"Step-up context was issued for {claim.operation}, not {operation}",
            )
        if claim.resource != resource:
            raise AuthorizationError(
                ErrorCode.STEP_UP_RESOURCE_MISMATCH,
                f"Step-up context was issued for {claim.resource}, not {resource}",
            )
        return claim
