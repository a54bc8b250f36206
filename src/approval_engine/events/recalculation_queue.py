"""Workflow recalculation jobs on a NATS JetStream work queue.

Jobs are delivered at least once. Each job names a workflow and the version
(``occ``) it was enqueued at; JetStream drops exact duplicates published
within the duplicate window.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING

import nats
from nats.errors import TimeoutError as NATSTimeoutError
from nats.js.api import AckPolicy, ConsumerConfig, RetentionPolicy
from pydantic import BaseModel

from approval_core.settings import RecalculationSettings
from approval_core.telemetry.context import get_trace_headers

if TYPE_CHECKING:
    from nats.aio.client import Client as NATSClient
    from nats.aio.msg import Msg
    from nats.js.client import JetStreamContext

logger = logging.getLogger(__name__)

STREAM_NAME = "APPROVAL_JOBS"
SUBJECT = "approval_jobs.recalculate"
DURABLE_NAME = "recalculation-worker"
DUPLICATE_WINDOW_SECONDS = 120


class RecalculationJob(BaseModel):
    workflow_id: uuid.UUID
    occ: int = 0

    @property
    def message_id(self) -> str:
        return f"{self.workflow_id}:{self.occ}"


class JobOutcome(StrEnum):
    ACK = "ack"
    RETRY = "retry"


JobHandler = Callable[[bytes, dict[str, str] | None], Awaitable[JobOutcome]]


async def _ensure_stream(js: JetStreamContext) -> None:
    await js.add_stream(
        name=STREAM_NAME,
        subjects=[SUBJECT],
        retention=RetentionPolicy.WORK_QUEUE,
        duplicate_window=DUPLICATE_WINDOW_SECONDS,
    )


class NATSRecalculationQueue:
    """Enqueues recalculation jobs.

    If NATS is unreachable the job is skipped with a warning; the workflow
    keeps its ``recalculation_required`` flag and the worker's sweep picks it up.
    """

    def __init__(self) -> None:
        self._nc: NATSClient | None = None
        self._js: JetStreamContext | None = None

    async def connect(self, nats_url: str) -> None:
        try:
            self._nc = await nats.connect(nats_url)
            self._js = self._nc.jetstream()
            await _ensure_stream(self._js)
            logger.info("Recalculation queue connected to NATS at %s", nats_url)
        except Exception:
            logger.warning("Failed to connect to NATS at %s, recalculation left to the sweep", nats_url, exc_info=True)
            self._nc = None
            self._js = None

    async def disconnect(self) -> None:
        if self._nc and not self._nc.is_closed:
            await self._nc.close()

    async def enqueue(self, workflow_id: uuid.UUID, occ: int) -> None:
        if self._js is None:
            logger.warning("Recalculation queue unavailable, workflow %s left to the sweep", workflow_id)
            return

        job = RecalculationJob(workflow_id=workflow_id, occ=occ)
        headers = {"Nats-Msg-Id": job.message_id, **get_trace_headers()}
        try:
            await self._js.publish(SUBJECT, job.model_dump_json().encode(), headers=headers)
            logger.debug("Enqueued recalculation of %s at occ %d", workflow_id, occ)
        except Exception:
            logger.warning("Failed to enqueue recalculation of %s", workflow_id, exc_info=True)


class NATSRecalculationConsumer:
    """Durable pull consumer feeding jobs to a handler with bounded concurrency."""

    def __init__(self, settings: RecalculationSettings | None = None) -> None:
        self._settings = settings or RecalculationSettings()
        self._nc: NATSClient | None = None
        self._js: JetStreamContext | None = None
        self._semaphore = asyncio.Semaphore(self._settings.concurrency)
        self._tasks: set[asyncio.Task[None]] = set()

    async def connect(self, nats_url: str) -> None:
        self._nc = await nats.connect(nats_url)
        self._js = self._nc.jetstream()
        await _ensure_stream(self._js)
        logger.info("Recalculation consumer connected to NATS at %s", nats_url)

    async def disconnect(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._nc and not self._nc.is_closed:
            await self._nc.close()

    async def run(self, handler: JobHandler, stop: asyncio.Event) -> None:
        if self._js is None:
            msg = "Consumer not connected. Call connect() first"
            raise RuntimeError(msg)

        subscription = await self._js.pull_subscribe(
            SUBJECT,
            durable=DURABLE_NAME,
            stream=STREAM_NAME,
            config=ConsumerConfig(
                ack_policy=AckPolicy.EXPLICIT,
                max_deliver=self._settings.max_deliver,
            ),
        )
        logger.info("Consuming %s as %s", SUBJECT, DURABLE_NAME)

        while not stop.is_set():
            try:
                messages = await subscription.fetch(
                    self._settings.fetch_batch,
                    timeout=self._settings.fetch_timeout_seconds,
                )
            except NATSTimeoutError:
                continue

            for message in messages:
                await self._semaphore.acquire()
                task = asyncio.create_task(self._process(handler, message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _process(self, handler: JobHandler, message: Msg) -> None:
        try:
            outcome = await handler(message.data, message.headers)
            if outcome == JobOutcome.ACK:
                await message.ack()
            else:
                await message.nak(delay=self._settings.nak_delay_seconds)
        except Exception:
            logger.exception("Recalculation job handling failed, leaving it for redelivery")
        finally:
            self._semaphore.release()
