"""W3C Trace Context helpers for propagation across the job queue."""

from __future__ import annotations

from collections.abc import Mapping

from opentelemetry import context as otel_context
from opentelemetry.propagate import extract, inject


def get_trace_headers() -> dict[str, str]:
    """Current trace context as headers for outbound NATS messages."""
    headers: dict[str, str] = {}
    inject(headers)
    return headers


def context_from_headers(headers: Mapping[str, str] | None) -> otel_context.Context:
    """Parent context carried by an inbound message, or the current one."""
    if not headers:
        return otel_context.get_current()
    return extract(dict(headers))
