"""Recalculation worker: turns queued jobs and periodic sweeps into service calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from opentelemetry import context as otel_context
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from approval_core.errors import ConcurrencyError, RecalculationRetriesExhausted
from approval_core.settings import RecalculationSettings
from approval_core.telemetry.context import context_from_headers

from approval_engine.events.recalculation_queue import JobOutcome, RecalculationJob

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from approval_engine.domain.recalculation_service import RecalculationService
    from approval_engine.domain.template_service import TemplateService
    from approval_engine.domain.workflow_service import WorkflowService
    from approval_engine.repository.protocols import RecalculationQueue

logger = logging.getLogger(__name__)


@dataclass
class WorkerServices:
    """Services bound to one unit of work (one database transaction)."""

    recalculation: RecalculationService
    workflows: WorkflowService
    templates: TemplateService


ServiceScope = Callable[[], "AbstractAsyncContextManager[WorkerServices]"]


class RecalculationWorker:
    def __init__(
        self,
        scope: ServiceScope,
        queue: RecalculationQueue,
        settings: RecalculationSettings | None = None,
    ) -> None:
        self._scope = scope
        self._queue = queue
        self._settings = settings or RecalculationSettings()

    async def handle(self, data: bytes, headers: dict[str, str] | None = None) -> JobOutcome:
        """Process one job.

        ACK on success, on an unknown workflow and on an unreadable payload;
        RETRY when the outcome may differ on redelivery.
        """
        try:
            job = RecalculationJob.model_validate_json(data)
        except PydanticValidationError:
            logger.warning("Dropping malformed recalculation job: %r", data[:200])
            return JobOutcome.ACK

        token = otel_context.attach(context_from_headers(headers))
        try:
            async with self._scope() as services:
                await services.recalculation.recalculate(job.workflow_id, min_occ=job.occ)
        except ConcurrencyError:
            logger.info("Workflow %s not yet at occ %d, retrying later", job.workflow_id, job.occ)
            return JobOutcome.RETRY
        except RecalculationRetriesExhausted:
            logger.warning("Recalculation of %s exhausted retries, redelivering", job.workflow_id)
            return JobOutcome.RETRY
        except SQLAlchemyError:
            logger.warning("Database error recalculating %s", job.workflow_id, exc_info=True)
            return JobOutcome.RETRY
        finally:
            otel_context.detach(token)
        return JobOutcome.ACK

    async def sweep(self) -> None:
        """Expire overdue workflows, re-enqueue lost jobs, finish template deprecations."""
        async with self._scope() as services:
            await services.workflows.expire_overdue()
        async with self._scope() as services:
            await services.recalculation.requeue_flagged(
                self._queue,
                older_than=timedelta(seconds=self._settings.sweep_interval_seconds),
            )
        async with self._scope() as services:
            await services.templates.complete_deprecations()

    async def run_sweeps(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.sweep()
            except SQLAlchemyError:
                logger.warning("Sweep failed, will retry next interval", exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._settings.sweep_interval_seconds)
            except TimeoutError:
                continue
