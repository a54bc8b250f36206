"""Tamper-evident audit trail.

Events form a single SHA-256 hash chain: each event's hash covers its own
content plus the previous event's hash, so editing or dropping any event
breaks every link after it. Links are assigned at append time, under the
store's chain lock, so concurrent writers never fork the chain.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from approval_core.enums import AuditEventType  # noqa: TC001

GENESIS_HASH = "0" * 64

AuditDetail = str | int | float | bool | list[str] | None


class AuditEvent(BaseModel):
    """One entry of the chain.

    ``sequence`` is the store's append order and is not hashed; ``id`` and
    ``event_hash`` are not hashed either.
    """

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    sequence: int | None = None
    event_type: AuditEventType
    entity_type: str = Field(min_length=1, max_length=100)
    entity_id: str = Field(min_length=1, max_length=200)
    actor_id: str = Field(min_length=1, max_length=200)
    description: str = ""
    details: dict[str, AuditDetail] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    previous_hash: str = Field(default=GENESIS_HASH, max_length=64)
    event_hash: str = Field(default="", max_length=64)

    def compute_hash(self) -> str:
        payload = {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "description": self.description,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
            "previous_hash": self.previous_hash,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def chained(self, previous_hash: str, *, at: datetime | None = None) -> AuditEvent:
        """Sealed copy linked after ``previous_hash``, stamped with the append time."""
        linked = self.model_copy(update={"previous_hash": previous_hash, "occurred_at": at or datetime.now(UTC)})
        linked.event_hash = linked.compute_hash()
        return linked

    def verify(self) -> bool:
        return self.event_hash == self.compute_hash()


class ChainVerification(BaseModel):
    valid: bool
    events_checked: int
    first_invalid_event_id: uuid.UUID | None = None


def verify_chain(events: list[AuditEvent]) -> ChainVerification:
    """Walk the chain from genesis; stop at the first event that is altered or unlinked."""
    previous = GENESIS_HASH
    for event in events:
        if event.previous_hash != previous or not event.verify():
            return ChainVerification(valid=False, events_checked=len(events), first_invalid_event_id=event.id)
        previous = event.event_hash
    return ChainVerification(valid=True, events_checked=len(events))
