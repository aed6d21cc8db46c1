"""Concrete collaborators backed by OpenAI and the Claude Code CLI."""

from .openai_realtime import OpenAIRealtimeBackend, OpenAIRealtimeConnection
from .openai_transcription import OpenAIChatService, OpenAITranscriptionService
from .claude_code_executor import ClaudeCodeTaskExecutor, format_tool_action

__all__ = [
    "OpenAIRealtimeBackend",
    "OpenAIRealtimeConnection",
    "OpenAIChatService",
    "OpenAITranscriptionService",
    "ClaudeCodeTaskExecutor",
    "format_tool_action",
]
