"""Bearer token verification via JWKS.

Graceful degradation: if auth is not configured, verification is skipped and
callers fall back to an anonymous identity.
"""

from __future__ import annotations

import logging

import jwt
from jwt import PyJWKClient
from pydantic import ValidationError

from approval_core.auth.models import TokenPayload
from approval_core.settings import AuthSettings

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Verifies JWT tokens against the identity provider's JWKS."""

    def __init__(self, settings: AuthSettings | None = None) -> None:
        self._settings = settings or AuthSettings()
        self._jwks_client: PyJWKClient | None = None

        if self._settings.enabled and self._settings.jwks_url:
            self._jwks_client = PyJWKClient(self._settings.jwks_url, cache_keys=True)
            logger.info("Initialized token verifier with JWKS from %s", self._settings.jwks_url)

    @property
    def is_configured(self) -> bool:
        return self._jwks_client is not None

    def verify_token(self, token: str) -> TokenPayload | None:
        """Verify a JWT and return its payload, or None when it is not acceptable."""
        if self._jwks_client is None:
            return None

        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(token)
            decoded = jwt.decode(
                token,
                signing_key.key,
                algorithms=self._settings.algorithms,
                audience=self._settings.audience,
                options={"verify_signature": True, "verify_aud": True, "verify_exp": True},
            )
            return TokenPayload.model_validate(decoded)
        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            return None
        except (jwt.InvalidTokenError, jwt.PyJWKClientError):
            logger.warning("Invalid token", exc_info=True)
            return None
        except ValidationError:
            logger.warning("Token claims rejected", exc_info=True)
            return None


_verifier: TokenVerifier | None = None


def get_verifier() -> TokenVerifier:
    """Get or create the token verifier singleton."""
    global _verifier
    if _verifier is None:
        _verifier = TokenVerifier()
    return _verifier
