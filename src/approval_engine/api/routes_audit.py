"""Audit trail endpoints: /api/v1/audit. Organization admins only."""

from __future__ import annotations

from approval_core.enums import AuditEventType
from fastapi import APIRouter, HTTPException, Query

from approval_engine.api.auth import IdentityDep
from approval_engine.api.deps import AuditServiceDep
from approval_engine.api.schemas import AuditEventResponse, ChainVerificationResponse

router = APIRouter(prefix="/api/v1/audit", tags=["audit"])


@router.get("/events")
async def list_events(
    service: AuditServiceDep,
    identity: IdentityDep,
    event_type: AuditEventType | None = None,
    entity_id: str | None = None,
    limit: int = Query(default=50, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditEventResponse]:
    if not identity.is_org_admin:
        raise HTTPException(status_code=403, detail="Organization admin required")
    events = await service.get_events(event_type=event_type, entity_id=entity_id, limit=limit, offset=offset)
    return [AuditEventResponse.model_validate(e, from_attributes=True) for e in events]


@router.get("/verify")
async def verify_chain(
    service: AuditServiceDep,
    identity: IdentityDep,
    limit: int = Query(default=1000, le=10_000),
) -> ChainVerificationResponse:
    if not identity.is_org_admin:
        raise HTTPException(status_code=403, detail="Organization admin required")
    result = await service.verify_integrity(limit=limit)
    return ChainVerificationResponse.model_validate(result, from_attributes=True)
