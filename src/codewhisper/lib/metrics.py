"""
Metrics collection for voice sessions and tool calls.

Uses OpenTelemetry instruments; with no meter provider configured they
are no-ops.
"""

import time
from typing import Optional

from opentelemetry import metrics

from codewhisper.lib.observability import get_meter


class MetricsCollector:
    """Collects CodeWhisper session and tool metrics."""

    def __init__(self, meter: metrics.Meter):
        self.meter = meter
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry metric instruments."""
        # Session metrics
        self.sessions_started = self.meter.create_counter(
            name="codewhisper_sessions_total",
            description="Total number of sessions started by mode",
            unit="1"
        )

        self.session_duration = self.meter.create_histogram(
            name="codewhisper_session_duration_ms",
            description="Duration of sessions from start to teardown",
            unit="ms"
        )

        self.active_sessions = self.meter.create_up_down_counter(
            name="codewhisper_active_sessions",
            description="Number of sessions currently holding resources",
            unit="1"
        )

        self.state_transitions = self.meter.create_counter(
            name="codewhisper_state_transitions_total",
            description="Orchestrator state transitions by target state",
            unit="1"
        )

        self.session_errors = self.meter.create_counter(
            name="codewhisper_session_errors_total",
            description="Fatal and transient session errors by type",
            unit="1"
        )

        # Tool metrics
        self.tool_calls = self.meter.create_counter(
            name="codewhisper_tool_calls_total",
            description="Tool calls by tool and terminal status",
            unit="1"
        )

        self.tool_duration = self.meter.create_histogram(
            name="codewhisper_tool_duration_ms",
            description="Tool execution duration",
            unit="ms"
        )

        self.approval_decisions = self.meter.create_counter(
            name="codewhisper_approval_decisions_total",
            description="Approval gate outcomes",
            unit="1"
        )

    def record_session_started(self, mode: str) -> None:
        self.sessions_started.add(1, {"mode": mode})
        self.active_sessions.add(1, {"mode": mode})

    def record_session_ended(self, mode: str, duration_ms: int, outcome: str) -> None:
        """Record a session teardown."""
        attributes = {"mode": mode, "outcome": outcome}
        self.session_duration.record(duration_ms, attributes)
        self.active_sessions.add(-1, {"mode": mode})

    def record_state_transition(self, mode: str, from_state: str, to_state: str) -> None:
        self.state_transitions.add(1, {"mode": mode, "from": from_state, "to": to_state})

    def record_session_error(self, error_type: str, fatal: bool) -> None:
        self.session_errors.add(1, {"error_type": error_type, "fatal": str(fatal)})

    def record_tool_call(self, tool_name: str, status: str, duration_ms: Optional[int] = None) -> None:
        """Record a tool call reaching a terminal status."""
        attributes = {"tool_name": tool_name, "status": status}
        self.tool_calls.add(1, attributes)
        if duration_ms is not None:
            self.tool_duration.record(duration_ms, attributes)

    def record_approval_decision(self, tool_name: str, policy: str, decision: str) -> None:
        self.approval_decisions.add(1, {"tool_name": tool_name, "policy": policy, "decision": decision})


class SessionTimer:
    """Tracks wall time of one session for the duration histogram."""

    def __init__(self, metrics_collector: MetricsCollector, mode: str):
        self.metrics_collector = metrics_collector
        self.mode = mode
        self.start_time = time.monotonic()

    def finish(self, outcome: str) -> int:
        duration_ms = int((time.monotonic() - self.start_time) * 1000)
        self.metrics_collector.record_session_ended(self.mode, duration_ms, outcome)
        return duration_ms


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def initialize_metrics(meter: Optional[metrics.Meter] = None) -> MetricsCollector:
    """Initialize global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter or get_meter())
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector, creating a no-op backed one on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(get_meter())
    return _metrics_collector
