"""Tests for OpenTelemetry setup, instrumentation and trace propagation."""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import approval_core.telemetry.setup as setup_mod
import pytest
from approval_core.telemetry.context import context_from_headers, get_trace_headers
from approval_core.telemetry.metrics import record_transition, record_vote_accepted
from approval_core.telemetry.setup import init_telemetry, instrument_app, shutdown_telemetry
from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator


@pytest.fixture
def settings() -> Iterator[MagicMock]:
    with patch("approval_core.telemetry.setup.OTelSettings") as mock_settings:
        mock_settings.return_value.enabled = True
        mock_settings.return_value.service_name = "approval-test"
        mock_settings.return_value.exporter_otlp_endpoint = "localhost:4317"
        mock_settings.return_value.metric_export_interval_ms = 15_000
        setup_mod._tracer_provider = None
        setup_mod._meter_provider = None
        yield mock_settings
        shutdown_telemetry()


@pytest.fixture
def instrumentors() -> Iterator[tuple[MagicMock, MagicMock]]:
    with (
        patch("approval_core.telemetry.setup.RedisInstrumentor") as redis_cls,
        patch("approval_core.telemetry.setup.SQLAlchemyInstrumentor") as sqlalchemy_cls,
    ):
        yield redis_cls, sqlalchemy_cls


class TestInitTelemetry:
    def test_creates_providers_and_instruments(self, settings, instrumentors) -> None:
        redis_cls, sqlalchemy_cls = instrumentors
        engine = MagicMock()

        assert init_telemetry("approval-test", engine=engine)

        assert setup_mod._tracer_provider is not None
        assert setup_mod._meter_provider is not None
        redis_cls.return_value.instrument.assert_called_once_with()
        sqlalchemy_cls.return_value.instrument.assert_called_once_with(engine=engine.sync_engine)

    def test_without_engine_skips_database(self, settings, instrumentors) -> None:
        _, sqlalchemy_cls = instrumentors

        init_telemetry("approval-test")

        sqlalchemy_cls.return_value.instrument.assert_not_called()

    def test_idempotent(self, settings, instrumentors) -> None:
        redis_cls, _ = instrumentors
        init_telemetry("approval-test")
        first = setup_mod._tracer_provider

        assert init_telemetry("approval-test")

        assert setup_mod._tracer_provider is first
        redis_cls.return_value.instrument.assert_called_once()

    def test_disabled_skips_everything(self, settings, instrumentors) -> None:
        settings.return_value.enabled = False
        redis_cls, sqlalchemy_cls = instrumentors

        assert not init_telemetry("approval-test", engine=MagicMock())

        assert setup_mod._tracer_provider is None
        redis_cls.return_value.instrument.assert_not_called()
        sqlalchemy_cls.return_value.instrument.assert_not_called()


class TestInstrumentApp:
    def test_excludes_health_checks(self, settings) -> None:
        app = MagicMock()
        with patch("approval_core.telemetry.setup.FastAPIInstrumentor") as instrumentor_cls:
            instrument_app(app)
        instrumentor_cls.instrument_app.assert_called_once_with(app, excluded_urls="health,ready")

    def test_disabled(self, settings) -> None:
        settings.return_value.enabled = False
        with patch("approval_core.telemetry.setup.FastAPIInstrumentor") as instrumentor_cls:
            instrument_app(MagicMock())
        instrumentor_cls.instrument_app.assert_not_called()


class TestShutdownTelemetry:
    def test_clears_providers(self, settings, instrumentors) -> None:
        init_telemetry("approval-test")

        shutdown_telemetry()

        assert setup_mod._tracer_provider is None
        assert setup_mod._meter_provider is None

    def test_safe_when_not_initialized(self) -> None:
        setup_mod._tracer_provider = None
        setup_mod._meter_provider = None

        shutdown_telemetry()


class TestPropagation:
    def test_no_headers_keeps_current_context(self) -> None:
        assert trace.get_current_span(context_from_headers(None)) is trace.get_current_span()

    def test_round_trip_through_headers(self) -> None:
        set_global_textmap(TraceContextTextMapPropagator())
        provider = TracerProvider()
        tracer = provider.get_tracer("test")

        with tracer.start_as_current_span("enqueue") as span:
            headers = get_trace_headers()

        assert "traceparent" in headers
        parent = trace.get_current_span(context_from_headers(headers)).get_span_context()
        assert parent.trace_id == span.get_span_context().trace_id
        provider.shutdown()


class TestMetrics:
    def test_counters_accept_without_provider(self) -> None:
        record_vote_accepted("APPROVE", high_privilege=True)
        record_transition("PENDING", "EXPIRED")
