"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP. When export is not enabled
the SDK providers run in-process without exporting anything.
"""

import logging
import os
from dataclasses import dataclass

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from gateloop.config import LoopConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)


@dataclass
class LoopMetrics:
    """Metric instruments recorded by the orchestrator.

    Attributes:
        iterations: Loop iterations started
        agent_runs: Agent invocations, by phase and status
        gate_runs: Gate runs, by status
        fix_attempts: Fix agent invocations after a gate failure
        run_duration: Wall-clock duration of whole runs
    """

    iterations: metrics.Counter
    agent_runs: metrics.Counter
    gate_runs: metrics.Counter
    fix_attempts: metrics.Counter
    run_duration: metrics.Histogram


def setup_telemetry(config: LoopConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with OTLP export.

    If OTLP_ENABLED is not "true" or the endpoint is not configured, the
    providers are set up without exporters.

    Args:
        config: Loop configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> LoopMetrics:
    """Create the orchestrator's metric instruments.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    return LoopMetrics(
        iterations=meter.create_counter(
            "gateloop_iterations_total",
            description="Total loop iterations",
        ),
        agent_runs=meter.create_counter(
            "gateloop_agent_runs_total",
            description="Total agent invocations",
        ),
        gate_runs=meter.create_counter(
            "gateloop_gate_runs_total",
            description="Total gate runs",
        ),
        fix_attempts=meter.create_counter(
            "gateloop_fix_attempts_total",
            description="Total fix attempts after gate failures",
        ),
        run_duration=meter.create_histogram(
            "gateloop_run_duration_seconds",
            description="Run duration",
            unit="s",
        ),
    )
