"""Abstract collaborator interfaces consumed by the session orchestrator."""

from .audio_pipeline import AudioPipeline, LevelObserver
from .transcription_service import TranscriptionResult, TranscriptionService
from .chat_service import ChatMessage, ChatService
from .task_executor import ImageData, TaskContext, TaskResult, TaskExecutor, ProgressCallback
from .screenshot_capture import ScreenshotCapture
from .realtime_backend import RealtimeConnection, RealtimeBackend
from .approval_prompter import ApprovalPrompter
from .local_tool_handler import ToolContext, LocalToolHandler

__all__ = [
    "AudioPipeline",
    "LevelObserver",
    "TranscriptionResult",
    "TranscriptionService",
    "ChatMessage",
    "ChatService",
    "ImageData",
    "TaskContext",
    "TaskResult",
    "TaskExecutor",
    "ProgressCallback",
    "ScreenshotCapture",
    "RealtimeConnection",
    "RealtimeBackend",
    "ApprovalPrompter",
    "ToolContext",
    "LocalToolHandler",
]
