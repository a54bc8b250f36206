"""Approval Engine FastAPI application."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from approval_core.db.engine import create_async_engine_factory, get_async_session_factory
from approval_core.db.redis import create_redis_pool
from approval_core.settings import DatabaseSettings, NATSSettings, RedisSettings
from approval_core.telemetry import init_telemetry, instrument_app, shutdown_telemetry
from fastapi import FastAPI

from approval_engine.api.errors import register_exception_handlers
from approval_engine.api.routes_audit import router as audit_router
from approval_engine.api.routes_roles import router as roles_router
from approval_engine.api.routes_templates import router as templates_router
from approval_engine.api.routes_workflows import router as workflows_router
from approval_engine.events.publisher import NATSPublisher
from approval_engine.events.recalculation_queue import NATSRecalculationQueue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:  # pragma: no cover
    """Manage application lifecycle: OTel + DB engine + Redis + NATS startup/shutdown."""
    engine = create_async_engine_factory(DatabaseSettings())
    init_telemetry("approval-engine", engine=engine)
    app.state.session_factory = get_async_session_factory(engine)
    app.state.redis = create_redis_pool(RedisSettings())

    nats_url = NATSSettings().url
    publisher = NATSPublisher()
    await publisher.connect(nats_url)
    app.state.nats_publisher = publisher

    queue = NATSRecalculationQueue()
    await queue.connect(nats_url)
    app.state.recalculation_queue = queue

    yield

    await queue.disconnect()
    await publisher.disconnect()
    await app.state.redis.aclose()
    await engine.dispose()
    shutdown_telemetry()


app = FastAPI(
    title="Approval Engine",
    version="0.1.0",
    lifespan=lifespan,
)

instrument_app(app)
register_exception_handlers(app)

app.include_router(roles_router)
app.include_router(templates_router)
app.include_router(workflows_router)
app.include_router(audit_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/ready")
async def ready() -> dict[str, str]:
    return {"status": "ready"}


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
