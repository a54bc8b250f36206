"""Audit trail for workflow, template and role changes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from approval_core.audit import AuditEvent, ChainVerification, verify_chain

if TYPE_CHECKING:
    from approval_core.audit import AuditDetail
    from approval_core.enums import AuditEventType

    from approval_engine.repository.protocols import AuditRepository

logger = logging.getLogger(__name__)


class AuditService:
    def __init__(self, repo: AuditRepository) -> None:
        self._repo = repo

    async def record_event(
        self,
        *,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        description: str = "",
        details: dict[str, AuditDetail] | None = None,
    ) -> AuditEvent:
        """Append an event; the repository links it to the current chain head."""
        draft = AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            description=description,
            details=details or {},
        )
        event = await self._repo.append(draft)
        logger.debug("Audit %s on %s %s by %s", event_type, entity_type, entity_id, actor_id)
        return event

    async def verify_integrity(self, *, limit: int = 1000) -> ChainVerification:
        result = verify_chain(await self._repo.get_chain(limit=limit))
        if not result.valid:
            logger.error("Audit chain broken at event %s", result.first_invalid_event_id)
        return result

    async def get_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        return await self._repo.list_events(event_type=event_type, entity_id=entity_id, limit=limit, offset=offset)
