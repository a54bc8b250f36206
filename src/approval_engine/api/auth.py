"""Request identity resolution.

The bearer token says who the caller is; the entity store says which roles
it holds. Usage in route handlers:

    @router.get("/protected")
    async def protected(identity: IdentityDep): ...
"""

from __future__ import annotations

import logging
from typing import Annotated

from approval_core.auth.verifier import get_verifier
from approval_core.models import Identity
from fastapi import Depends, HTTPException, Request

from approval_engine.api.deps import SessionDep
from approval_engine.repository.postgres import PgEntityRepository

logger = logging.getLogger(__name__)

ANONYMOUS = Identity(subject_id="anonymous", is_authenticated=False)


async def get_identity(request: Request, session: SessionDep) -> Identity:
    """Resolve the calling user or agent.

    Returns an unauthenticated identity if auth is not configured (dev mode).
    """
    verifier = get_verifier()
    if not verifier.is_configured:
        return ANONYMOUS

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return ANONYMOUS

    payload = verifier.verify_token(auth_header.removeprefix("Bearer "))
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    entity = await PgEntityRepository(session).get(payload.entity_type, payload.sub)
    if entity is None:
        logger.info("Token subject %s has no entity record, treating as roleless", payload.sub)

    return Identity(
        subject_id=payload.sub,
        entity_type=payload.entity_type,
        org_role=entity.org_role if entity else payload.org_role,
        roles=tuple(entity.roles) if entity else (),
        step_up=payload.step_up,
    )


async def require_identity(identity: Annotated[Identity, Depends(get_identity)]) -> Identity:
    if not identity.is_authenticated:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


IdentityDep = Annotated[Identity, Depends(require_identity)]
