"""Unit tests for structured logging, the audit logger and metrics collection."""

import json
import logging
import sys

import pytest
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from unittest.mock import Mock, patch

from codewhisper.lib.logging_config import AuditLogger, StructuredFormatter
from codewhisper.lib.metrics import MetricsCollector, SessionTimer, get_metrics_collector
from codewhisper.lib.observability import TelemetryManager, TelemetrySettings, session_span, tool_call_span


@pytest.fixture
def meter():
    return Mock()


@pytest.fixture
def collector(meter):
    return MetricsCollector(meter)


class TestStructuredFormatter:

    def test_formats_json_with_extras(self):
        formatter = StructuredFormatter(include_trace=False, extra_fields={"service": "codewhisper"})
        record = logging.LogRecord("codewhisper.test", logging.INFO, __file__, 10, "Session %s started", ("s1",), None)
        record.session_id = "s1"

        entry = json.loads(formatter.format(record))

        assert entry["message"] == "Session s1 started"
        assert entry["level"] == "INFO"
        assert entry["session_id"] == "s1"
        assert entry["service"] == "codewhisper"
        assert "trace_id" not in entry

    def test_exception_details(self):
        formatter = StructuredFormatter(include_trace=False)
        try:
            raise ValueError("bad frame")
        except ValueError:
            record = logging.LogRecord("codewhisper.test", logging.ERROR, __file__, 10, "failed", (), sys.exc_info())

        entry = json.loads(formatter.format(record))

        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad frame"


class TestAuditLogger:

    def test_session_event(self, caplog):
        audit = AuditLogger()

        with caplog.at_level(logging.INFO, logger="codewhisper.audit"):
            audit.log_session_event("started", "s1", "realtime", "connecting", "success")

        record = caplog.records[-1]
        assert record.audit_type == "session"
        assert record.session_id == "s1"
        assert record.mode == "realtime"

    def test_denied_approval_logged_as_warning(self, caplog):
        audit = AuditLogger()

        with caplog.at_level(logging.INFO, logger="codewhisper.audit"):
            audit.log_approval_event("take_screenshot", "call_1", "always", "denied", reason="user denied")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.decision == "denied"
        assert record.reason == "user denied"


class TestMetricsCollector:

    def test_instruments_created(self, meter):
        MetricsCollector(meter)

        counter_names = [call[1]["name"] for call in meter.create_counter.call_args_list]
        assert "codewhisper_sessions_total" in counter_names
        assert "codewhisper_tool_calls_total" in counter_names

    def test_session_lifecycle(self, collector):
        collector.record_session_started("realtime")
        collector.sessions_started.add.assert_called_with(1, {"mode": "realtime"})
        collector.active_sessions.add.assert_called_with(1, {"mode": "realtime"})

        duration = SessionTimer(collector, "realtime").finish("stopped")

        assert duration >= 0
        collector.active_sessions.add.assert_called_with(-1, {"mode": "realtime"})
        collector.session_duration.record.assert_called_once()

    def test_global_collector_is_shared(self):
        assert get_metrics_collector() is get_metrics_collector()

    def test_tool_call_without_duration(self, collector):
        collector.record_tool_call("take_screenshot", "denied")

        collector.tool_calls.add.assert_called_with(1, {"tool_name": "take_screenshot", "status": "denied"})
        collector.tool_duration.record.assert_not_called()


class TestSpans:

    def test_spans_run_without_telemetry(self):
        with session_span("s1", "connect", "realtime") as span:
            assert span is not None

    def test_tool_span_propagates_errors(self):
        with pytest.raises(RuntimeError):
            with tool_call_span("take_screenshot", "call_1", "s1"):
                raise RuntimeError("capture failed")


class TestTelemetryManager:

    def test_tracing_uses_ratio_sampler(self):
        manager = TelemetryManager(TelemetrySettings({"trace_sampling_ratio": 0.25}))

        with patch("codewhisper.lib.observability.trace.set_tracer_provider") as set_provider:
            manager._setup_tracing(Resource.create({"service.name": "codewhisper"}))

        provider = set_provider.call_args[0][0]
        try:
            assert isinstance(provider.sampler, TraceIdRatioBased)
            assert provider.sampler.rate == 0.25
        finally:
            provider.shutdown()
