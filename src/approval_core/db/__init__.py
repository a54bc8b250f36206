"""Database connectivity: async SQLAlchemy engine, Redis, session management."""

from approval_core.db.engine import create_async_engine_factory, get_async_session_factory
from approval_core.db.redis import create_redis_pool
from approval_core.db.tables import Base

__all__ = [
    "Base",
    "create_async_engine_factory",
    "create_redis_pool",
    "get_async_session_factory",
]
