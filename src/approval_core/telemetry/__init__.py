"""OpenTelemetry integration for the approval engine."""

from approval_core.telemetry.setup import get_tracer, init_telemetry, instrument_app, shutdown_telemetry

__all__ = ["get_tracer", "init_telemetry", "instrument_app", "shutdown_telemetry"]
