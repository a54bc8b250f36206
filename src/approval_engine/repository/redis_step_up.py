"""Redis-backed step-up context store.

The context key embeds subject, operation, resource and jti, so a single DEL
both checks the binding and consumes the context. Redis reports how many keys
it deleted; only the caller that sees 1 has used the context up.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from approval_core.models import StepUpContext
from approval_core.settings import StepUpSettings

if TYPE_CHECKING:
    from approval_core.enums import StepUpOperation
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class RedisStepUpStore:
    def __init__(self, redis: Redis, settings: StepUpSettings | None = None) -> None:
        self._redis = redis
        self._prefix = (settings or StepUpSettings()).key_prefix

    def _context_key(self, subject_id: str, operation: str, resource: str, jti: str) -> str:
        return f"{self._prefix}:ctx:{subject_id}:{operation}:{resource}:{jti}"

    def _active_key(self, subject_id: str, operation: str, resource: str) -> str:
        return f"{self._prefix}:active:{subject_id}:{operation}:{resource}"

    async def save(self, context: StepUpContext, ttl_seconds: int) -> StepUpContext:
        active_key = self._active_key(context.subject_id, context.operation, context.resource)

        claimed = await self._redis.set(active_key, context.jti, nx=True, ex=ttl_seconds)
        if not claimed:
            existing_jti = await self._redis.get(active_key)
            if existing_jti:
                raw = await self._redis.get(
                    self._context_key(context.subject_id, context.operation, context.resource, existing_jti)
                )
                if raw is not None:
                    return StepUpContext.model_validate_json(raw)
            # Active marker outlived its context (consumed or expired); take it over.
            await self._redis.set(active_key, context.jti, ex=ttl_seconds)

        await self._redis.set(
            self._context_key(context.subject_id, context.operation, context.resource, context.jti),
            context.model_dump_json(),
            ex=ttl_seconds,
        )
        return context

    async def consume(self, subject_id: str, operation: StepUpOperation, resource: str, jti: str) -> bool:
        deleted = await self._redis.delete(self._context_key(subject_id, operation, resource, jti))
        if deleted == 0:
            return False

        active_key = self._active_key(subject_id, operation, resource)
        if await self._redis.get(active_key) == jti:
            await self._redis.delete(active_key)
        logger.debug("Step-up context %s consumed by %s", jti, subject_id)
        return True
