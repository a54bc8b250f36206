"""Token verification for users and agents."""

from approval_core.auth.models import TokenPayload
from approval_core.auth.verifier import TokenVerifier, get_verifier

__all__ = ["TokenPayload", "TokenVerifier", "get_verifier"]
