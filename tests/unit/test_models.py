"""
Unit tests for data models validation and behavior.

Covers the session state machine tables, tool call status monotonicity,
approval policies, tool specs and the realtime wire payload.
"""

import pytest

from pydantic import ValidationError

from codewhisper.models.session import Mode, Session, SessionState, MODE_TRANSITIONS
from codewhisper.models.tool_call import ToolCall, ToolCallStatus, ToolOutcome, TERMINAL_STATUSES
from codewhisper.models.tool_spec import ApprovalMode, ApprovalPolicy, MCPServerConfig, ToolKind, ToolSpec
from codewhisper.models.transcript import EntryKind, Role, TranscriptEntry
from codewhisper.models.realtime_config import (
    FunctionToolDescriptor,
    MCPToolDescriptor,
    RealtimeSessionConfiguration,
    TurnDetectionEagerness,
)


class TestSession:
    """Test Session model validation and mode-gated transitions."""

    def test_new_session_defaults(self):
        session = Session(mode=Mode.REALTIME)

        assert session.state == SessionState.IDLE
        assert session.muted is False
        assert session.session_id
        assert session.is_active is False

    def test_blank_session_id_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Session(session_id="  ", mode=Mode.TRANSCRIBE_ONLY)
        assert "session_id" in str(exc_info.value)

    def test_transcribe_only_path(self):
        session = Session(mode=Mode.TRANSCRIBE_ONLY)

        for state in (SessionState.CONNECTING, SessionState.RECORDING, SessionState.TRANSCRIBING, SessionState.IDLE):
            assert session.transition_to(state) is True

        history = session.metadata["state_transitions"]
        assert [step["to"] for step in history] == ["connecting", "recording", "transcribing", "idle"]

    def test_transcribe_only_cannot_speak(self):
        session = Session(mode=Mode.TRANSCRIBE_ONLY, state=SessionState.TRANSCRIBING)

        assert session.transition_to(SessionState.AWAITING_REPLY) is False
        assert session.state == SessionState.TRANSCRIBING

    def test_realtime_never_transcribes(self):
        session = Session(mode=Mode.REALTIME, state=SessionState.RECORDING)

        assert session.can_transition(SessionState.TRANSCRIBING) is False
        assert session.can_transition(SessionState.EXECUTING_TOOL) is True

    def test_executing_tool_only_in_realtime(self):
        for mode in (Mode.TRANSCRIBE_ONLY, Mode.TRANSCRIBE_AND_SPEAK):
            session = Session(mode=mode, state=SessionState.RECORDING)
            assert session.can_transition(SessionState.EXECUTING_TOOL) is False

    def test_idle_and_error_reachable_from_any_state(self):
        for mode, table in MODE_TRANSITIONS.items():
            for state in table:
                session = Session(mode=mode, state=state)
                assert session.can_transition(SessionState.IDLE)
                assert session.can_transition(SessionState.ERROR)

    def test_reply_ids_handled_once(self):
        session = Session(mode=Mode.TRANSCRIBE_AND_SPEAK)

        assert session.mark_reply_handled("reply-1") is True
        assert session.mark_reply_handled("reply-1") is False
        assert session.mark_reply_handled("reply-2") is True

    def test_session_summary(self):
        session = Session(mode=Mode.REALTIME, tool_names=["take_screenshot"])
        summary = session.get_session_summary()

        assert summary["mode"] == "realtime"
        assert summary["state"] == "idle"
        assert summary["tools"] == ["take_screenshot"]
        assert summary["last_error"] is None


class TestToolCall:
    """Test ToolCall status lifecycle."""

    def test_from_backend_decodes_arguments(self):
        call = ToolCall.from_backend("call_1", "take_screenshot", '{"capture_type": "window", "app_name": "Xcode"}')

        assert call.arguments == {"capture_type": "window", "app_name": "Xcode"}
        assert call.status == ToolCallStatus.PENDING

    def test_from_backend_keeps_malformed_arguments(self):
        call = ToolCall.from_backend("call_1", "take_screenshot", "{not json")
        assert call.arguments == {"_raw": "{not json"}

        call = ToolCall.from_backend("call_2", "take_screenshot", "[1, 2]")
        assert call.arguments == {"_raw": "[1, 2]"}

    def test_empty_arguments_default_to_object(self):
        call = ToolCall.from_backend("call_1", "take_screenshot", "")
        assert call.arguments == {}

    def test_successful_lifecycle(self):
        call = ToolCall(call_id="call_1", name="execute_external_task")

        assert call.transition_status(ToolCallStatus.APPROVED)
        assert call.transition_status(ToolCallStatus.EXECUTING)
        assert call.started_at is not None
        assert call.transition_status(ToolCallStatus.SUCCEEDED)

        assert call.is_terminal
        assert call.completed_at is not None
        assert call.history == [
            ToolCallStatus.PENDING, ToolCallStatus.APPROVED, ToolCallStatus.EXECUTING, ToolCallStatus.SUCCEEDED
        ]
        assert call.duration_ms() is not None

    def test_terminal_status_is_final(self):
        call = ToolCall(call_id="call_1", name="take_screenshot")
        call.transition_status(ToolCallStatus.DENIED)

        for status in ToolCallStatus:
            assert call.transition_status(status) is False
        assert call.status == ToolCallStatus.DENIED
        assert call.history.count(ToolCallStatus.DENIED) == 1

    def test_cannot_execute_without_approval(self):
        call = ToolCall(call_id="call_1", name="take_screenshot")

        assert call.transition_status(ToolCallStatus.EXECUTING) is False
        assert call.transition_status(ToolCallStatus.SUCCEEDED) is False
        assert call.status == ToolCallStatus.PENDING

    def test_status_never_moves_backwards(self):
        call = ToolCall(call_id="call_1", name="take_screenshot")
        call.transition_status(ToolCallStatus.APPROVED)
        call.transition_status(ToolCallStatus.EXECUTING)

        assert call.transition_status(ToolCallStatus.APPROVED) is False
        assert call.transition_status(ToolCallStatus.PENDING) is False

    def test_result_text_per_status(self):
        call = ToolCall(call_id="call_1", name="take_screenshot")
        call.transition_status(ToolCallStatus.APPROVED)
        call.transition_status(ToolCallStatus.EXECUTING)
        call.outcome = ToolOutcome(output="done")
        call.transition_status(ToolCallStatus.SUCCEEDED)
        assert call.result_text() == "done"

        failed = ToolCall(call_id="call_2", name="take_screenshot")
        failed.transition_status(ToolCallStatus.FAILED, error="boom")
        assert failed.result_text() == "Error: boom"

        denied = ToolCall(call_id="call_3", name="take_screenshot")
        denied.transition_status(ToolCallStatus.DENIED)
        assert "denied" in denied.result_text()

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {
            ToolCallStatus.DENIED, ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED
        }


class TestApprovalPolicy:
    """Test ApprovalPolicy parsing and wire mapping."""

    def test_shorthand_strings(self):
        assert ApprovalPolicy.model_validate("never").mode == ApprovalMode.NEVER
        assert ApprovalPolicy.model_validate("always").mode == ApprovalMode.ALWAYS

    def test_filtered_requires_patterns(self):
        with pytest.raises(ValidationError):
            ApprovalPolicy(mode=ApprovalMode.FILTERED_BY_NAME)

    def test_wire_value(self):
        assert ApprovalPolicy.never().wire_value == "never"
        assert ApprovalPolicy.always().wire_value == "always"
        assert ApprovalPolicy.filtered_by_name(["file_*"]).wire_value == "always"

    def test_policy_is_frozen(self):
        policy = ApprovalPolicy.never()
        with pytest.raises(ValidationError):
            policy.mode = ApprovalMode.ALWAYS


class TestToolSpec:
    """Test ToolSpec and MCP server configuration validation."""

    def test_remote_tool_requires_endpoint(self):
        with pytest.raises(ValidationError):
            ToolSpec(name="stripe", kind=ToolKind.REMOTE_MCP)

    def test_local_tool_rejects_endpoint(self):
        with pytest.raises(ValidationError):
            ToolSpec(name="take_screenshot", kind=ToolKind.LOCAL_FUNCTION, endpoint="https://example.com")

    def test_mcp_server_url_must_be_http(self):
        with pytest.raises(ValidationError):
            MCPServerConfig(label="files", server_url="ftp://files.example.com")

    def test_blank_authorization_is_absent(self):
        server = MCPServerConfig(label="stripe", server_url="https://mcp.stripe.com", authorization="  ")
        assert server.authorization is None

    def test_from_mcp_config(self):
        server = MCPServerConfig(
            label="stripe",
            server_url="https://mcp.stripe.com",
            authorization="sk_test",
            approval_policy=ApprovalPolicy.always(),
        )
        spec = ToolSpec.from_mcp_config(server)

        assert spec.name == "stripe"
        assert spec.is_remote
        assert spec.endpoint == "https://mcp.stripe.com"
        assert spec.auth_token == "sk_test"
        assert spec.approval_policy.mode == ApprovalMode.ALWAYS


class TestTranscriptEntry:
    """Test TranscriptEntry constructors."""

    def test_entries_are_immutable(self):
        entry = TranscriptEntry.user("hello")
        with pytest.raises(ValidationError):
            entry.content = "changed"

    def test_tool_error_is_a_warning(self):
        entry = TranscriptEntry.tool_event(EntryKind.TOOL_ERROR, "take_screenshot failed", tool_call_id="call_1")

        assert entry.role == Role.SYSTEM
        assert entry.warning is True
        assert entry.tool_call_id == "call_1"

    def test_entry_ids_unique(self):
        assert TranscriptEntry.user("a").entry_id != TranscriptEntry.user("a").entry_id


class TestRealtimeSessionConfiguration:
    """Test the session.update payload."""

    def _configuration(self):
        return RealtimeSessionConfiguration(
            instructions="Be brief.",
            voice="verse",
            tools=[
                FunctionToolDescriptor(name="take_screenshot", description="Screens", parameters={"type": "object"}),
                MCPToolDescriptor(server_label="stripe", server_url="https://mcp.stripe.com",
                                  authorization="sk_live_secret", require_approval="always"),
            ],
        )

    def test_to_event_wraps_session(self):
        event = self._configuration().to_event()

        assert event["type"] == "session.update"
        session = event["session"]
        assert session["voice"] == "verse"
        assert session["input_audio_format"] == "pcm16"
        assert session["turn_detection"] == {"type": "semantic_vad", "eagerness": "medium"}
        assert [tool["type"] for tool in session["tools"]] == ["function", "mcp"]
        assert session["tools"][1]["authorization"] == "sk_live_secret"

    def test_masked_hides_credentials(self):
        payload = self._configuration().masked()
        assert payload["tools"][1]["authorization"] == "***"

    def test_absent_authorization_omitted(self):
        configuration = RealtimeSessionConfiguration(
            instructions="x",
            tools=[MCPToolDescriptor(server_label="docs", server_url="https://docs.example.com")],
            turn_detection={"eagerness": TurnDetectionEagerness.HIGH},
        )
        wire = configuration.to_wire()

        assert "authorization" not in wire["tools"][0]
        assert wire["tools"][0]["require_approval"] == "never"
        assert wire["turn_detection"]["eagerness"] == "high"
