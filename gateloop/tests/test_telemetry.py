"""Tests for telemetry module.

These tests verify OpenTelemetry setup for traces and metrics.
"""

import os
from unittest.mock import MagicMock, patch

from gateloop.config import LoopConfig
from gateloop.telemetry import LoopMetrics, create_metrics, setup_telemetry


class TestSetupTelemetry:
    """Test setup_telemetry function."""

    def test_setup_returns_tracer_and_meter(self):
        """With OTLP disabled, in-process providers are used."""
        with patch.dict(os.environ, {"OTLP_ENABLED": "false"}):
            tracer, meter = setup_telemetry(LoopConfig())

        assert tracer is not None
        assert meter is not None

    def test_tracer_can_open_spans(self):
        tracer, _ = setup_telemetry(LoopConfig(service_name="gateloop-test"))

        with tracer.start_as_current_span("gateloop.test") as span:
            span.set_attribute("test.value", 1)

    def test_uses_otlp_endpoint_from_config(self):
        """Exporters are created for the configured endpoint when enabled."""
        config = LoopConfig(otlp_endpoint="http://custom:4317")

        with patch.dict(os.environ, {"OTLP_ENABLED": "true"}):
            with patch(
                "opentelemetry.exporter.otlp.proto.grpc.trace_exporter.OTLPSpanExporter"
            ) as mock_span_exporter:
                with patch(
                    "opentelemetry.exporter.otlp.proto.grpc.metric_exporter.OTLPMetricExporter"
                ) as mock_metric_exporter:
                    setup_telemetry(config)

        mock_span_exporter.assert_called_with(endpoint="http://custom:4317")
        mock_metric_exporter.assert_called_with(endpoint="http://custom:4317")

    def test_no_export_without_endpoint(self):
        config = LoopConfig(otlp_endpoint="")

        with patch.dict(os.environ, {"OTLP_ENABLED": "true"}):
            with patch(
                "opentelemetry.exporter.otlp.proto.grpc.trace_exporter.OTLPSpanExporter"
            ) as mock_span_exporter:
                setup_telemetry(config)

        mock_span_exporter.assert_not_called()


class TestCreateMetrics:
    """Test create_metrics function."""

    def test_creates_named_instruments(self):
        meter = MagicMock()

        create_metrics(meter)

        counter_names = [call[0][0] for call in meter.create_counter.call_args_list]
        assert counter_names == [
            "gateloop_iterations_total",
            "gateloop_agent_runs_total",
            "gateloop_gate_runs_total",
            "gateloop_fix_attempts_total",
        ]
        meter.create_histogram.assert_called_once()
        assert meter.create_histogram.call_args[0][0] == "gateloop_run_duration_seconds"

    def test_returns_bundle_of_instruments(self):
        meter = MagicMock()
        counter = MagicMock()
        meter.create_counter.return_value = counter

        bundle = create_metrics(meter)

        assert isinstance(bundle, LoopMetrics)
        bundle.agent_runs.add(1, {"phase": "impl", "status": "success"})
        counter.add.assert_called_with(1, {"phase": "impl", "status": "success"})

    def test_works_with_real_meter(self):
        _, meter = setup_telemetry(LoopConfig())

        bundle = create_metrics(meter)

        bundle.iterations.add(1)
        bundle.run_duration.record(1.5, {"status": "done"})
