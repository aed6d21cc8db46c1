"""Session orchestration services."""

from .approval_gate import ApprovalDecision, ApprovalGate
from .tool_registry import ToolRegistry, RegistryBuild, SCREENSHOT_TOOL_NAME, EXTERNAL_TASK_TOOL_NAME
from .transcript_store import TranscriptStore, TranscriptSubscription
from .tool_dispatcher import ToolDispatcher
from .local_tools import ScreenshotToolHandler, ExternalTaskToolHandler
from .prompt_enhancer import PromptEnhancer
from .session_configurator import build_session_configuration
from .session_orchestrator import SessionOrchestrator

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ToolRegistry",
    "RegistryBuild",
    "SCREENSHOT_TOOL_NAME",
    "EXTERNAL_TASK_TOOL_NAME",
    "TranscriptStore",
    "TranscriptSubscription",
    "ToolDispatcher",
    "ScreenshotToolHandler",
    "ExternalTaskToolHandler",
    "PromptEnhancer",
    "build_session_configuration",
    "SessionOrchestrator",
]
