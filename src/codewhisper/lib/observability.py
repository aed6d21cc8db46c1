"""
OpenTelemetry configuration with OTLP exporters for CodeWhisper.

Traces cover session lifecycle and tool calls. When telemetry has not
been initialized the helpers fall back to the OpenTelemetry API's
no-op providers, so instrumented code runs unchanged in tests.
"""

import logging
import os
from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.trace import Status, StatusCode


logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "codewhisper"


class TelemetrySettings:
    """Settings for OpenTelemetry setup."""

    def __init__(self, config: Dict[str, Any]):
        self.service_name = config.get("service_name", "codewhisper")
        self.service_version = config.get("service_version", "1.0.0")
        self.environment = config.get("environment", "development")

        self.otlp_endpoint = config.get("otlp_endpoint", os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317"))
        self.export_timeout = config.get("export_timeout", 30)
        self.max_export_batch_size = config.get("max_export_batch_size", 512)
        self.export_interval_millis = config.get("export_interval_millis", 10000)

        self.trace_sampling_ratio = config.get("trace_sampling_ratio", 1.0)
        self.resource_attributes = config.get("resource_attributes", {})


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle."""

    def __init__(self, settings: TelemetrySettings):
        self.settings = settings
        self._initialized = False
        self._tracer: Optional[trace.Tracer] = None
        self._meter: Optional[metrics.Meter] = None

    def initialize(self) -> None:
        """Initialize OpenTelemetry with OTLP exporters."""
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return

        try:
            resource = Resource.create({
                "service.name": self.settings.service_name,
                "service.version": self.settings.service_version,
                "deployment.environment": self.settings.environment,
                **self.settings.resource_attributes
            })
            self._setup_tracing(resource)
            self._setup_metrics(resource)
            self._setup_instrumentation()

            self._initialized = True
            logger.info(f"OpenTelemetry initialized for service: {self.settings.service_name}")

        except Exception as e:
            logger.error(f"Failed to initialize OpenTelemetry: {e}")
            raise

    def _setup_tracing(self, resource: Resource) -> None:
        """Setup distributed tracing with OTLP export."""
        span_processor = BatchSpanProcessor(
            OTLPSpanExporter(endpoint=self.settings.otlp_endpoint, timeout=self.settings.export_timeout),
            max_export_batch_size=self.settings.max_export_batch_size
        )

        tracer_provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.settings.trace_sampling_ratio)
        )
        tracer_provider.add_span_processor(span_processor)

        trace.set_tracer_provider(tracer_provider)
        self._tracer = trace.get_tracer(INSTRUMENTATION_NAME)

    def _setup_metrics(self, resource: Resource) -> None:
        """Setup metrics collection with OTLP export."""
        metric_reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=self.settings.otlp_endpoint, timeout=self.settings.export_timeout),
            export_interval_millis=self.settings.export_interval_millis
        )

        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))
        self._meter = metrics.get_meter(INSTRUMENTATION_NAME)

    def _setup_instrumentation(self) -> None:
        """Setup automatic instrumentation for asyncio and logging."""
        AsyncioInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)
        logger.info("Automatic instrumentation configured")

    def get_tracer(self) -> trace.Tracer:
        if not self._initialized:
            raise RuntimeError("Telemetry not initialized")
        return self._tracer

    def get_meter(self) -> metrics.Meter:
        if not self._initialized:
            raise RuntimeError("Telemetry not initialized")
        return self._meter

    def shutdown(self) -> None:
        """Gracefully shutdown telemetry and flush pending data."""
        if not self._initialized:
            return

        try:
            if hasattr(trace.get_tracer_provider(), 'shutdown'):
                trace.get_tracer_provider().shutdown()

            if hasattr(metrics.get_meter_provider(), 'shutdown'):
                metrics.get_meter_provider().shutdown()

            logger.info("OpenTelemetry shutdown completed")

        except Exception as e:
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


# Global telemetry manager instance
_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize global telemetry manager."""
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(TelemetrySettings(config))
    _telemetry_manager.initialize()

    return _telemetry_manager


def get_tracer() -> trace.Tracer:
    """Get the configured tracer, or the API default when telemetry is off."""
    if _telemetry_manager is None:
        return trace.get_tracer(INSTRUMENTATION_NAME)
    return _telemetry_manager.get_tracer()


def get_meter() -> metrics.Meter:
    """Get the configured meter, or the API default when telemetry is off."""
    if _telemetry_manager is None:
        return metrics.get_meter(INSTRUMENTATION_NAME)
    return _telemetry_manager.get_meter()


def shutdown_telemetry() -> None:
    """Shutdown global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


@contextmanager
def session_span(session_id: str, operation: str, mode: Optional[str] = None) -> Iterator[trace.Span]:
    """Span around a session operation such as connect or transcribe."""
    attributes = {
        "session.id": session_id,
        "session.operation": operation
    }
    if mode:
        attributes["session.mode"] = mode

    with get_tracer().start_as_current_span(f"session.{operation}", attributes=attributes) as span:
        yield span


@contextmanager
def tool_call_span(tool_name: str, call_id: str, session_id: Optional[str] = None) -> Iterator[trace.Span]:
    """Span around one tool call, marked as an error if it raises."""
    attributes = {
        "tool.name": tool_name,
        "tool.call_id": call_id
    }
    if session_id:
        attributes["session.id"] = session_id

    with get_tracer().start_as_current_span(f"tool.{tool_name}", attributes=attributes) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
