"""Auth token payload models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator

from approval_core.enums import EntityType, OrgRole
from approval_core.models import StepUpClaim


class TokenPayload(BaseModel):
    """Decoded and verified bearer token.

    Agents and users share the token format; ``entity_type`` tells them apart.
    A step-up token additionally carries the ``step_up`` claim.
    """

    sub: str = Field(min_length=1)
    entity_type: EntityType = EntityType.USER
    org_role: OrgRole = OrgRole.MEMBER
    step_up: StepUpClaim | None = None
    exp: int | None = None
    iat: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_step_up(cls, data: Any) -> Any:
        """Accept the flat ``step_up_operation``/``step_up_resource``/``jti`` claim form."""
        if isinstance(data, dict) and "step_up" not in data and "step_up_operation" in data:
            data = dict(data)
            data["step_up"] = {
                "operation": data.pop("step_up_operation"),
                "resource": data.pop("step_up_resource", ""),
                "jti": data.get("jti", ""),
            }
        return data
