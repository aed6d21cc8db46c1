"""Abstract interface for locally executed function tools."""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from codewhisper.models.tool_call import ToolCall, ToolOutcome
from codewhisper.models.tool_spec import ToolSpec


class ToolContext:
    """Per-call context handed to a local handler."""

    def __init__(
        self,
        session_id: Optional[str],
        report_progress: Callable[[str], None],
        last_screenshot: Optional[bytes] = None,
        on_started: Optional[Callable[[ToolCall], None]] = None
    ):
        self.session_id = session_id
        self.report_progress = report_progress
        self.last_screenshot = last_screenshot
        self.on_started = on_started

    def notify_started(self, call: ToolCall) -> None:
        """Called by the dispatcher once the call is approved and executing."""
        if self.on_started is not None:
            self.on_started(call)


class LocalToolHandler(ABC):
    """A function tool executed on this machine."""

    @property
    @abstractmethod
    def spec(self) -> ToolSpec:
        """Tool spec offered to the backend."""
        pass

    @abstractmethod
    async def run(self, call: ToolCall, context: ToolContext) -> ToolOutcome:
        """Execute the call.

        Raises:
            ToolExecutionError: The tool failed; the call resolves to FAILED
        """
        pass

    async def cancel(self) -> None:
        """Cooperative cancellation hook, called before the running task is cancelled."""
        return None
