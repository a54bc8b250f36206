"""Mapping of domain exceptions to HTTP responses."""

from __future__ import annotations

import logging

from approval_core.errors import (
    ApprovalError,
    AuthorizationError,
    ConcurrencyError,
    ConflictError,
    ConsistencyError,
    NotFoundError,
    RecalculationRetriesExhausted,
    ValidationError,
)
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# Most specific first
_STATUS_BY_ERROR: tuple[tuple[type[ApprovalError], int], ...] = (
    (ValidationError, 422),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ConsistencyError, 409),
    (ConcurrencyError, 409),
    (RecalculationRetriesExhausted, 503),
)


def status_for(exc: ApprovalError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def approval_error_handler(request: Request, exc: ApprovalError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info("%s %s -> %d %s", request.method, request.url.path, status_code, exc.code)
    return JSONResponse(status_code=status_code, content={"code": str(exc.code), "detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApprovalError, approval_error_handler)
