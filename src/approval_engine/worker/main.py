"""Run the workflow recalculation worker."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from approval_core.db.engine import create_async_engine_factory, get_async_session_factory
from approval_core.settings import DatabaseSettings, NATSSettings, RecalculationSettings
from approval_core.telemetry import init_telemetry, shutdown_telemetry

from approval_engine.domain.audit_service import AuditService
from approval_engine.domain.recalculation_service import RecalculationService
from approval_engine.domain.template_service import TemplateService
from approval_engine.domain.workflow_service import WorkflowService
from approval_engine.events.publisher import NATSPublisher
from approval_engine.events.recalculation_queue import NATSRecalculationConsumer, NATSRecalculationQueue
from approval_engine.repository.postgres import (
    PgAuditRepository,
    PgGroupMembershipRepository,
    PgTemplateRepository,
    PgVoteRepository,
    PgWorkflowRepository,
)
from approval_engine.worker.recalculation_worker import RecalculationWorker, ServiceScope, WorkerServices

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def service_scope(
    session_factory: async_sessionmaker[AsyncSession],
    publisher: NATSPublisher,
    settings: RecalculationSettings,
) -> ServiceScope:
    @asynccontextmanager
    async def scope() -> AsyncGenerator[WorkerServices]:
        async with session_factory() as session, session.begin():
            audit = AuditService(repo=PgAuditRepository(session))
            template_repo = PgTemplateRepository(session)
            workflow_repo = PgWorkflowRepository(session)
            workflows = WorkflowService(
                repo=workflow_repo,
                template_repo=template_repo,
                audit=audit,
                publisher=publisher,
            )
            yield WorkerServices(
                recalculation=RecalculationService(
                    workflow_repo=workflow_repo,
                    vote_repo=PgVoteRepository(session),
                    membership=PgGroupMembershipRepository(session),
                    workflow_service=workflows,
                    settings=settings,
                ),
                workflows=workflows,
                templates=TemplateService(repo=template_repo, workflow_service=workflows, audit=audit),
            )

    return scope


async def run_worker() -> None:  # pragma: no cover
    settings = RecalculationSettings()
    nats_url = NATSSettings().url

    engine = create_async_engine_factory(DatabaseSettings())
    init_telemetry("approval-worker", engine=engine)
    session_factory = get_async_session_factory(engine)

    publisher = NATSPublisher()
    await publisher.connect(nats_url)
    queue = NATSRecalculationQueue()
    await queue.connect(nats_url)
    consumer = NATSRecalculationConsumer(settings)
    await consumer.connect(nats_url)

    worker = RecalculationWorker(service_scope(session_factory, publisher, settings), queue, settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Starting recalculation worker (concurrency=%d)", settings.concurrency)
    try:
        await asyncio.gather(consumer.run(worker.handle, stop), worker.run_sweeps(stop))
    finally:
        await consumer.disconnect()
        await queue.disconnect()
        await publisher.disconnect()
        await engine.dispose()
        shutdown_telemetry()
        logger.info("Recalculation worker stopped")


def main() -> None:  # pragma: no cover
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
