"""Data models for CodeWhisper voice sessions."""

from .session import Mode, SessionState, Session, MODE_TRANSITIONS
from .tool_spec import ToolKind, ApprovalMode, ApprovalPolicy, MCPServerConfig, ToolSpec
from .tool_call import ToolCallStatus, ToolCall, ToolOutcome, TERMINAL_STATUSES
from .transcript import Role, EntryKind, TranscriptEntry
from .realtime_config import (
    TurnDetectionEagerness,
    TurnDetection,
    InputAudioTranscription,
    FunctionToolDescriptor,
    MCPToolDescriptor,
    RealtimeSessionConfiguration,
)

__all__ = [
    "Mode",
    "SessionState",
    "Session",
    "MODE_TRANSITIONS",
    "ToolKind",
    "ApprovalMode",
    "ApprovalPolicy",
    "MCPServerConfig",
    "ToolSpec",
    "ToolCallStatus",
    "ToolCall",
    "ToolOutcome",
    "TERMINAL_STATUSES",
    "Role",
    "EntryKind",
    "TranscriptEntry",
    "TurnDetectionEagerness",
    "TurnDetection",
    "InputAudioTranscription",
    "FunctionToolDescriptor",
    "MCPToolDescriptor",
    "RealtimeSessionConfiguration",
]
