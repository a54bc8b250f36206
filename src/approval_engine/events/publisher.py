"""NATS JetStream publisher for workflow and vote events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import nats

from approval_core.telemetry.context import get_trace_headers

from approval_engine.events.messages import SUBJECT_PREFIX

if TYPE_CHECKING:
    from nats.aio.client import Client as NATSClient
    from nats.js.client import JetStreamContext

    from approval_engine.events.messages import ApprovalEvent

logger = logging.getLogger(__name__)

STREAM_NAME = "APPROVALS"
MAX_AGE_SECONDS = 7 * 24 * 60 * 60


class NATSPublisher:
    """Publishes approval events to JetStream.

    Events are notifications for downstream consumers, not part of the
    workflow's state, so a missing NATS connection only skips them.
    """

    def __init__(self) -> None:
        self._nc: NATSClient | None = None
        self._js: JetStreamContext | None = None

    async def connect(self, nats_url: str) -> None:
        try:
            self._nc = await nats.connect(nats_url)
            self._js = self._nc.jetstream()
            await self._js.add_stream(
                name=STREAM_NAME,
                subjects=[f"{SUBJECT_PREFIX}.>"],
                max_msgs=100_000,
                max_age=MAX_AGE_SECONDS,
            )
            logger.info("Publishing approval events to %s on %s", STREAM_NAME, nats_url)
        except Exception:
            logger.warning("Failed to connect to NATS at %s, events will be skipped", nats_url, exc_info=True)
            self._nc = None
            self._js = None

    async def disconnect(self) -> None:
        if self._nc and not self._nc.is_closed:
            await self._nc.close()
            logger.info("Disconnected from NATS")

    async def publish(self, event: ApprovalEvent) -> None:
        if self._js is None:
            logger.debug("NATS unavailable, skipping %s for workflow %s", event.subject, event.workflow_id)
            return

        headers = {"Nats-Msg-Id": str(event.event_id), **get_trace_headers()}
        try:
            await self._js.publish(event.subject, event.model_dump_json().encode(), headers=headers)
            logger.debug("Published %s for workflow %s", event.subject, event.workflow_id)
        except Exception:
            logger.warning("Failed to publish %s for workflow %s", event.subject, event.workflow_id, exc_info=True)
